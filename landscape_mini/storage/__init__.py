"""Disk image, loop device, mount and filesystem operations."""

"""Tests for backends - the Debian and Alpine capability implementations."""

import io
import subprocess
import tarfile
from unittest.mock import patch

import pytest

from landscape_mini.backends import AlpineBackend, DebianBackend, create_backend
from landscape_mini.backends import alpine as alpine_module
from landscape_mini.backends.base import ASSETS_DIR, COMMON_TOOLS
from landscape_mini.domain import BaseSystem, BuildConfig, OutputFormat
from landscape_mini.exceptions import DependencyMissingError, DownloadError
from landscape_mini.storage.commands import run_command


@pytest.fixture
def debian(build_config):
    return DebianBackend(build_config)


@pytest.fixture
def alpine(build_config):
    return AlpineBackend(build_config.with_overrides(base_system=BaseSystem.ALPINE))


def _scripts(mock_chroot):
    return [c.args[1] for c in mock_chroot.call_args_list]


class TestFactory:
    """Tests for create_backend()."""

    def test_debian(self, build_config):
        backend = create_backend(build_config)

        assert isinstance(backend, DebianBackend)
        assert backend.name == "debian"

    def test_alpine(self):
        backend = create_backend(BuildConfig(base_system=BaseSystem.ALPINE))

        assert isinstance(backend, AlpineBackend)
        assert backend.chroot_shell == "/bin/sh"


class TestDependencies:
    """Tests for required_tools and check_dependencies()."""

    def test_debian_needs_debootstrap(self, debian):
        assert "debootstrap" in debian.required_tools
        assert set(COMMON_TOOLS) <= set(debian.required_tools)
        assert "qemu-img" not in debian.required_tools

    def test_vmdk_needs_qemu_img(self):
        backend = AlpineBackend(BuildConfig(output_format=OutputFormat.BOTH))

        assert "qemu-img" in backend.required_tools

    def test_missing_tools_reported_together(self, debian):
        with patch(
            "landscape_mini.backends.base.missing_commands", return_value=["sgdisk", "debootstrap"]
        ):
            with pytest.raises(DependencyMissingError) as excinfo:
                debian.check_dependencies()

        assert excinfo.value.missing == ["sgdisk", "debootstrap"]
        assert excinfo.value.backend == "debian"

    @pytest.mark.parametrize("backend_cls", [DebianBackend, AlpineBackend])
    def test_strip_checked_before_build(self, backend_cls, monkeypatch):
        monkeypatch.setenv("PATH", "")

        with pytest.raises(DependencyMissingError) as excinfo:
            backend_cls(BuildConfig()).check_dependencies()

        assert "strip" in excinfo.value.missing

    def test_all_present(self, debian):
        with patch("landscape_mini.backends.base.missing_commands", return_value=[]):
            debian.check_dependencies()


class TestChrootAndFiles:
    """Tests for the shared chroot and file helpers."""

    def test_run_in_chroot(self, debian, session, build_paths, make_result):
        with patch(
            "landscape_mini.backends.base.run_command", return_value=make_result()
        ) as mock_run:
            debian.run_in_chroot(session, "apt-get update -y")

        command = mock_run.call_args.args[0]
        assert command == ["chroot", str(build_paths.rootfs_dir), "/bin/bash", "-c", "set -e\napt-get update -y"]
        assert mock_run.call_args.kwargs["env"]["LC_ALL"] == "C.UTF-8"

    def test_run_in_chroot_stops_at_first_failure(self, alpine, session, tmp_path):
        marker = tmp_path / "reached"

        def without_chroot(command, **kwargs):
            # drop "chroot <root>" and run the script with the host shell
            return run_command(command[2:], **kwargs)

        with patch("landscape_mini.backends.base.run_command", side_effect=without_chroot):
            with pytest.raises(subprocess.CalledProcessError):
                alpine.run_in_chroot(session, f"false\ntouch {marker}\n")

        assert not marker.exists()

    def test_run_in_chroot_best_effort_commands(self, alpine, session, tmp_path):
        marker = tmp_path / "reached"

        def without_chroot(command, **kwargs):
            return run_command(command[2:], **kwargs)

        with patch("landscape_mini.backends.base.run_command", side_effect=without_chroot):
            alpine.run_in_chroot(session, f"false || true\ntouch {marker}\n")

        assert marker.exists()

    def test_set_password_uses_stdin(self, debian, session, make_result):
        with patch(
            "landscape_mini.backends.base.run_command", return_value=make_result()
        ) as mock_run:
            debian.set_password(session, "ld")

        assert mock_run.call_args.kwargs["input_text"] == "ld:landscape\n"
        assert "ld:landscape" not in " ".join(mock_run.call_args.args[0])

    def test_write_file_replaces_symlink(self, debian, session, rootfs, tmp_path):
        host_file = tmp_path / "host-resolv.conf"
        host_file.write_text("nameserver 127.0.0.53\n")
        (rootfs / "etc" / "resolv.conf").symlink_to(host_file)

        written = debian.write_file(session, "/etc/resolv.conf", "nameserver 114.114.114.114\n")

        assert not written.is_symlink()
        assert written.read_text() == "nameserver 114.114.114.114\n"
        assert host_file.read_text() == "nameserver 127.0.0.53\n"

    def test_write_file_mode(self, alpine, session, rootfs):
        path = alpine.write_file(session, "etc/sudoers.d/wheel", "%wheel ALL=(ALL) ALL\n", mode=0o440)

        assert path.stat().st_mode & 0o777 == 0o440

    def test_write_file_outside_rootfs_refused(self, debian, session, rootfs):
        with pytest.raises(ValueError):
            debian.write_file(session, "../escape", "x")

    def test_append_line(self, alpine, session, rootfs):
        (rootfs / "etc" / "modules").write_text("af_packet\n")

        alpine.append_line(session, "etc/modules", "nf_conntrack")

        assert (rootfs / "etc" / "modules").read_text() == "af_packet\nnf_conntrack\n"

    def test_install_asset(self, debian, session, rootfs):
        target = debian.install_asset(session, "usr/local/bin/expand-rootfs.sh", mode=0o755)

        source = ASSETS_DIR / "usr/local/bin/expand-rootfs.sh"
        assert target.read_bytes() == source.read_bytes()
        assert target.stat().st_mode & 0o111

    def test_remove_paths(self, alpine, session, rootfs):
        (rootfs / "usr" / "bin").mkdir(parents=True)
        (rootfs / "usr" / "bin" / "perf").write_text("x")
        (rootfs / "usr" / "share" / "perf-core").mkdir(parents=True)

        alpine.remove_paths(session, "usr/bin/perf", "usr/share/perf-core", "usr/bin/missing")

        assert not (rootfs / "usr" / "bin" / "perf").exists()
        assert not (rootfs / "usr" / "share" / "perf-core").exists()


class TestSharedConfiguration:
    """Tests for fstab, hostname and GRUB helpers."""

    def test_write_fstab_uses_uuids(self, debian, attached_session, rootfs):
        uuids = {"/dev/loop7p3": "root-uuid", "/dev/loop7p2": "ABCD-EF01"}
        with patch("landscape_mini.backends.base.read_uuid", side_effect=uuids.get):
            debian.write_fstab(attached_session)

        fstab = (rootfs / "etc" / "fstab").read_text()
        assert "UUID=root-uuid   /           ext4" in fstab
        assert "UUID=ABCD-EF01    /boot/efi   vfat" in fstab

    def test_write_hostname(self, debian, session, rootfs):
        debian.write_hostname(session)

        assert (rootfs / "etc" / "hostname").read_text() == "landscape\n"
        assert "127.0.1.1   landscape" in (rootfs / "etc" / "hosts").read_text()

    def test_install_grub_targets_both_firmwares(self, debian, attached_session):
        with patch.object(debian, "run_in_chroot") as mock_chroot:
            debian.install_grub(attached_session, "update-grub")

        script = mock_chroot.call_args.args[1]
        assert "--target=x86_64-efi" in script
        assert "--removable" in script
        assert "grub-install --target=i386-pc /dev/loop7" in script
        assert script.rstrip().endswith("update-grub")

    def test_kernel_version_script(self, alpine):
        assert "grep lts" in alpine.kernel_version_script("lts")
        assert "grep" not in alpine.kernel_version_script()


class TestDebianBackend:
    """Tests for DebianBackend operations."""

    def test_bootstrap(self, debian, session, build_paths):
        with patch("landscape_mini.backends.debian.run_command") as mock_run:
            debian.bootstrap(session)

        assert mock_run.call_args.args[0] == [
            "debootstrap",
            "--variant=minbase",
            "--include=systemd,systemd-sysv,dbus",
            "trixie",
            str(build_paths.rootfs_dir),
            "http://deb.debian.org/debian",
        ]

    def test_configure(self, debian, attached_session, rootfs):
        with patch.object(attached_session, "mount_pseudo_filesystems") as pseudo, patch.object(
            debian, "run_in_chroot"
        ) as mock_chroot, patch("landscape_mini.backends.base.read_uuid", return_value="u"):
            debian.configure(attached_session)

        pseudo.assert_called_once()
        sources = (rootfs / "etc" / "apt" / "sources.list").read_text().splitlines()
        assert [line.split()[2] for line in sources] == ["trixie", "trixie-updates", "trixie-backports"]
        assert (rootfs / "etc" / "resolv.conf").read_text() == "nameserver 114.114.114.114\n"
        assert "PermitRootLogin yes" in (rootfs / "etc/ssh/sshd_config.d/root-login.conf").read_text()
        scripts = _scripts(mock_chroot)
        assert any("apt-get install -y --no-install-recommends linux-image-amd64" in s for s in scripts)
        assert any("systemctl mask NetworkManager" in s for s in scripts)
        assert any("useradd -m -s /bin/bash -G sudo ld" in s for s in scripts)
        chpasswd = [c for c in mock_chroot.call_args_list if c.args[1] == "chpasswd"]
        assert [c.kwargs["input_text"] for c in chpasswd] == ["root:landscape\n", "ld:landscape\n"]

    def test_install_services(self, debian, session, rootfs):
        with patch.object(debian, "run_in_chroot") as mock_chroot:
            debian.install_services(session)

        assert (rootfs / "etc/systemd/system/landscape-router.service").is_file()
        assert (rootfs / "etc/systemd/system/expand-rootfs.service").is_file()
        assert _scripts(mock_chroot) == [
            "systemctl enable landscape-router.service",
            "systemctl enable expand-rootfs.service",
        ]

    def test_install_docker(self, debian, session, rootfs, make_result):
        with patch.object(
            debian, "run_in_chroot", return_value=make_result("amd64\n")
        ) as mock_chroot:
            debian.install_docker(session)

        docker_list = (rootfs / "etc/apt/sources.list.d/docker.list").read_text()
        assert docker_list.startswith("deb [arch=amd64 signed-by=/etc/apt/keyrings/docker.asc]")
        assert '"bip": "172.18.1.1/24"' in (rootfs / "etc/docker/daemon.json").read_text()
        assert _scripts(mock_chroot)[-1] == "systemctl enable docker.service"

    def test_cleanup(self, debian, session):
        with patch.object(debian, "run_in_chroot") as mock_chroot:
            debian.cleanup(session)

        scripts = _scripts(mock_chroot)
        assert "update-initramfs" in scripts[0]
        assert any("dpkg --purge --force-depends grub-efi-amd64" in s for s in scripts)
        assert "apt-get clean" in scripts[-1]


def _apk_package(path, with_member=True):
    """Write a fake .apk: a signature segment followed by the data segment."""
    segments = []
    for members in ([".SIGN.RSA.alpine.pub"], ["sbin/apk.static"] if with_member else ["sbin/apk"]):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
            for name in members:
                data = b"#!/bin/sh\n" if "apk" in name else b"sig"
                info = tarfile.TarInfo(name)
                info.size = len(data)
                archive.addfile(info, io.BytesIO(data))
        segments.append(buffer.getvalue())
    path.write_bytes(b"".join(segments))
    return path


class TestAlpineBackend:
    """Tests for AlpineBackend operations."""

    def test_extract_apk_static(self, tmp_path):
        package = _apk_package(tmp_path / "apk-tools-static.apk")
        dest = tmp_path / "apk-tools" / "sbin" / "apk.static"

        alpine_module.extract_apk_static(package, dest)

        assert dest.read_bytes() == b"#!/bin/sh\n"
        assert dest.stat().st_mode & 0o755 == 0o755

    def test_extract_missing_member(self, tmp_path):
        package = _apk_package(tmp_path / "apk-tools-static.apk", with_member=False)

        with pytest.raises(DownloadError, match="apk.static"):
            alpine_module.extract_apk_static(package, tmp_path / "apk.static")

    def test_ensure_apk_static_uses_cache(self, alpine, session):
        cached = alpine.apk_static_path(session)
        cached.parent.mkdir(parents=True)
        cached.write_text("#!/bin/sh\n")
        cached.chmod(0o755)

        with patch("landscape_mini.backends.alpine.download_apk_tools") as mock_download:
            assert alpine.ensure_apk_static(session) == cached

        mock_download.assert_not_called()

    def test_bootstrap(self, alpine, session, rootfs):
        with patch.object(alpine, "ensure_apk_static", return_value=rootfs / "apk.static"), patch(
            "landscape_mini.backends.alpine.run_command"
        ) as mock_run:
            alpine.bootstrap(session)

        command = mock_run.call_args.args[0]
        assert command[-2:] == ["add", "alpine-base"]
        assert "--initdb" in command
        assert "v3.21/community" in (rootfs / "etc/apk/repositories").read_text()

    def test_enable_runlevels_tolerates_optional(self, alpine, session):
        with patch.object(alpine, "run_in_chroot") as mock_chroot:
            alpine.enable_runlevels(session)

        script = mock_chroot.call_args.args[1]
        assert "rc-update add devfs sysinit\n" in script
        assert "rc-update add syslog boot 2>/dev/null || true" in script
        assert "rc-update add networking boot\n" in script

    def test_serial_console_uncomments_existing(self, alpine, session, rootfs):
        (rootfs / "etc" / "inittab").write_text(
            "tty1::respawn:/sbin/getty 38400 tty1\n"
            "#ttyS0::respawn:/sbin/getty -L ttyS0 115200 vt100\n"
        )

        alpine.enable_serial_console(session)

        lines = (rootfs / "etc" / "inittab").read_text().splitlines()
        assert "ttyS0::respawn:/sbin/getty -L ttyS0 115200 vt100" in lines
        assert not any(line.startswith("#ttyS0") for line in lines)

    def test_serial_console_written_when_missing(self, alpine, session, rootfs):
        alpine.enable_serial_console(session)

        assert alpine_module.SERIAL_GETTY in (rootfs / "etc" / "inittab").read_text()

    def test_install_services(self, alpine, session, rootfs):
        with patch.object(alpine, "run_in_chroot") as mock_chroot:
            alpine.install_services(session)

        assert (rootfs / "etc/init.d/landscape-router").stat().st_mode & 0o111
        assert _scripts(mock_chroot) == [
            "rc-update add landscape-router default",
            "rc-update add expand-rootfs boot",
        ]

    def test_cleanup_removes_bpftool_bloat(self, alpine, session, rootfs):
        for relative in ("usr/bin/perf", "usr/lib/python3.12/os.py", "boot/System.map-6.6"):
            path = rootfs / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("x")
        (rootfs / "usr/bin/iperf3").write_text("keep")

        with patch.object(alpine, "run_in_chroot"):
            alpine.cleanup(session)

        assert not (rootfs / "usr/bin/perf").exists()
        assert not (rootfs / "usr/lib/python3.12").exists()
        assert not (rootfs / "boot/System.map-6.6").exists()
        assert (rootfs / "usr/bin/iperf3").exists()

"""Phase orchestration for a single image build.

Phases (in order):
    1. Download          payload binary and static assets into the cache
    2. Create Image      allocate, partition, format and mount the image
    3. Bootstrap         minimal base system (backend)
    4. Configure         bootable system (backend)
    5. Install Landscape payload, helpers and services
    6. Install Docker    container runtime, only when requested
    7. Cleanup & Shrink  trim the rootfs, shrink, repartition, output transforms
    8. Report            list outputs and usage hints

Resuming:
    build(config, resume_phase=N) skips every phase below N. Phases 3-7 need
    the image attached and mounted, so resuming into one of them reattaches
    the existing image first; a missing image is reported before anything on
    disk changes.

Every failure is labelled with the phase it happened in, goes through exactly
one cleanup pass of the session, and propagates to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from landscape_mini.backends import Backend, create_backend
from landscape_mini.build import trim
from landscape_mini.build.download import download_payload
from landscape_mini.build.payload import INIT_CONFIG_NAME, install_payload
from landscape_mini.build.report import build_report, log_report
from landscape_mini.build.session import BuildSession
from landscape_mini.domain import BuildConfig, BuildPaths, BuildReport, Phase, ShrinkResult
from landscape_mini.exceptions import (
    BackendOperationError,
    BuildError,
    BuildInterrupted,
    ConfigurationError,
    ImageNotFoundError,
    PhaseFailedError,
)
from landscape_mini.logging import LoggerFactory, operation_context
from landscape_mini.storage.commands import format_command_failure
from landscape_mini.storage.convert import produce_outputs
from landscape_mini.storage.image import build_disk_image
from landscape_mini.storage.shrink import shrink_image


log = LoggerFactory.for_build()


@dataclass
class BuildContext:
    """Mutable state threaded through the phases of one run."""

    config: BuildConfig
    paths: BuildPaths
    backend: Backend
    session: BuildSession
    base_dir: Path
    shrink: Optional[ShrinkResult] = None
    report: Optional[BuildReport] = None


def call_backend(backend: Backend, operation: str, session: BuildSession) -> None:
    """Invoke a backend capability, naming the operation in any failure.

    Raises:
        BackendOperationError: Wrapping whatever the backend raised
        BuildInterrupted: Passed through unchanged
    """
    try:
        getattr(backend, operation)(session)
    except (BuildInterrupted, BackendOperationError):
        raise
    except Exception as error:
        raise BackendOperationError(operation, backend.name, format_command_failure(error)) from error


# ==============================================================================
# Phases
# ==============================================================================


def _download(ctx: BuildContext) -> None:
    download_payload(ctx.config, ctx.paths.download_dir)


def _create_image(ctx: BuildContext) -> None:
    ctx.paths.output_dir.mkdir(parents=True, exist_ok=True)
    ctx.paths.rootfs_dir.mkdir(parents=True, exist_ok=True)
    table = build_disk_image(ctx.session, ctx.config.image_size_mb, ctx.config.esp_size_mb)
    log.info(
        f"Root partition spans sectors {table.root.start_sector}-{table.root.end_sector}"
    )


def _bootstrap(ctx: BuildContext) -> None:
    call_backend(ctx.backend, "bootstrap", ctx.session)


def _configure(ctx: BuildContext) -> None:
    call_backend(ctx.backend, "configure", ctx.session)


def _install_payload(ctx: BuildContext) -> None:
    install_payload(ctx.session, ctx.backend, ctx.base_dir / "configs" / INIT_CONFIG_NAME)
    call_backend(ctx.backend, "install_services", ctx.session)


def _install_docker(ctx: BuildContext) -> None:
    if not ctx.config.include_docker:
        log.info("Docker not requested, nothing to install")
        return
    call_backend(ctx.backend, "install_docker", ctx.session)


def _cleanup_and_shrink(ctx: BuildContext) -> None:
    session, rootfs = ctx.session, ctx.paths.rootfs_dir
    trim.trim_rootfs(session, ctx.backend)
    call_backend(ctx.backend, "cleanup", session)
    trim.finish_trim(session)

    session.unmount_pseudo_filesystems()
    session.unmount(rootfs / "boot" / "efi")
    trim.remove_journal(session)
    session.unmount(rootfs)

    ctx.shrink = shrink_image(session)
    produce_outputs(ctx.config, ctx.paths)


def _report(ctx: BuildContext) -> None:
    ctx.report = build_report(ctx.config, ctx.paths, ctx.shrink)
    log_report(ctx.report)


PHASES: dict[Phase, Callable[[BuildContext], None]] = {
    Phase.DOWNLOAD: _download,
    Phase.CREATE_IMAGE: _create_image,
    Phase.BOOTSTRAP: _bootstrap,
    Phase.CONFIGURE: _configure,
    Phase.INSTALL_PAYLOAD: _install_payload,
    Phase.INSTALL_DOCKER: _install_docker,
    Phase.CLEANUP_AND_SHRINK: _cleanup_and_shrink,
    Phase.REPORT: _report,
}


# ==============================================================================
# Driver
# ==============================================================================


def run_phase(phase: Phase, ctx: BuildContext, reattach: bool = False) -> None:
    """Run one phase, labelling any failure with it.

    Raises:
        BuildError: With ``phase`` set; non-BuildError exceptions arrive
            wrapped in PhaseFailedError
    """
    with operation_context(phase.slug, phase=int(phase), title=phase.title):
        try:
            if reattach:
                ctx.session.reattach()
            PHASES[phase](ctx)
        except BuildError as error:
            if error.phase is None:
                error.phase = phase
            raise
        except Exception as error:
            wrapped = PhaseFailedError(error)
            wrapped.phase = phase
            raise wrapped from error


def _log_summary(config: BuildConfig, paths: BuildPaths, start: Phase) -> None:
    log.info("Landscape Mini - x86 UEFI Image Builder")
    log.info(f"  Base System       : {config.base_system.value}")
    log.info(f"  Landscape Version : {config.version}")
    log.info(f"  Download Source   : {config.download_base}")
    log.info(f"  Release / Mirror  : {config.release} / {config.mirror}")
    log.info(f"  Include Docker    : {'yes' if config.include_docker else 'no'}")
    log.info(f"  Output Format     : {config.output_format.value}")
    log.info(f"  Compress Output   : {'yes' if config.compress else 'no'}")
    log.info(f"  Image Size        : {config.image_size_mb} MB")
    log.info(f"  Output Image      : {paths.image}")
    if start > Phase.DOWNLOAD:
        log.info(f"  Resume From       : Phase {int(start)} ({start.title})")


def build(
    config: BuildConfig,
    resume_phase: int = 0,
    base_dir: Optional[Path] = None,
) -> BuildReport:
    """Build an image, optionally resuming at a later phase.

    Args:
        config: Validated before anything else happens
        resume_phase: 0 or 1 runs everything; N in 2..8 skips phases below N
        base_dir: Directory holding work/ and output/ (default: cwd)

    Returns:
        The report produced by the final phase

    Raises:
        ConfigurationError: Invalid config or resume phase
        DependencyMissingError: A required host tool is missing
        ImageNotFoundError: Resuming into phases 3-7 without an image
        BuildError: Any phase failure, labelled with its phase
    """
    config.validate()
    if not isinstance(resume_phase, int) or not 0 <= resume_phase <= len(Phase):
        raise ConfigurationError(f"Resume phase must be between 0 and {len(Phase)}, got {resume_phase!r}")

    base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
    paths = BuildPaths.for_config(config, base_dir)
    backend = create_backend(config)
    backend.check_dependencies()

    start = Phase(max(resume_phase, Phase.DOWNLOAD))
    if start.needs_image and not paths.image.is_file():
        raise ImageNotFoundError(str(paths.image))

    _log_summary(config, paths, start)

    with BuildSession(config, paths) as session:
        ctx = BuildContext(config, paths, backend, session, base_dir)
        for phase in Phase:
            if phase < start:
                log.info(f"Skipping phase {int(phase)}: {phase.title}")
                continue
            run_phase(phase, ctx, reattach=phase == start and phase.needs_image)

    log.success("Build complete")
    return ctx.report

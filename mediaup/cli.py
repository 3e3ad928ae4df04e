"""Command line interface for mediaup package."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from rich.logging import RichHandler

from . import __version__
from .cli_progress import (
    UploadProgressDisplay,
    _human_size,
    render_configuration_summary,
    render_probe,
)
from .errors import UploadError
from .models import BucketClass, UploadConfig, UploadStatus
from .orchestrator import UploadOrchestrator
from .services.credentials import BearerSession, MemorySessionStore
from .utils.events import FALLBACK, PROGRESS, RETRY


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _setup_logging(debug: bool, silent: bool, log_level: Optional[str]) -> str:
    """
    Configure logging.

    Default behavior is silent unless --debug, --log-level or LOG_LEVEL is provided.
    Returns a string describing effective mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    logging.disable(logging.NOTSET)

    env_level = os.getenv("LOG_LEVEL")
    if silent or (not debug and not log_level and not env_level):
        logging.disable(logging.CRITICAL)
        root_logger.setLevel(logging.CRITICAL + 1)
        return "silent"

    if debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, (log_level or env_level or "INFO").upper(), logging.INFO)

    handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    return logging.getLevelName(level)


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_env_file(path: Path, override: bool = False) -> None:
    if not path.exists():
        raise CLIError(f"env file not found: {path}")
    if not path.is_file():
        raise CLIError(f"env path is not a file: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"could not read env file {path}: {exc}") from exc

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = _strip_optional_quotes(value.strip())
        if override or key not in os.environ:
            os.environ[key] = value


def _resolve_default_env_file() -> Optional[Path]:
    default_env = Path(".env")
    return default_env if default_env.exists() and default_env.is_file() else None


def _session_from_env() -> Optional[BearerSession]:
    """Seed a session from MEDIAUP_ACCESS_TOKEN / MEDIAUP_REFRESH_TOKEN / MEDIAUP_EXPIRES_AT."""
    access_token = os.getenv("MEDIAUP_ACCESS_TOKEN")
    if not access_token:
        return None
    expires_at = os.getenv("MEDIAUP_EXPIRES_AT")
    try:
        return BearerSession(
            access_token=access_token,
            refresh_token=os.getenv("MEDIAUP_REFRESH_TOKEN") or None,
            expires_at=float(expires_at) if expires_at else None,
        )
    except ValueError as exc:
        raise CLIError(f"invalid MEDIAUP_EXPIRES_AT: {expires_at!r}") from exc


def _build_config(args: argparse.Namespace) -> UploadConfig:
    overrides = {}
    if args.no_compress:
        overrides["compress_images"] = False
    if args.no_fallback:
        overrides["enable_fallback"] = False
    try:
        return UploadConfig.from_env(**overrides)
    except ValueError as exc:
        raise CLIError(f"invalid configuration: {exc}") from exc


async def _run_probe(sources: List[Path], config: UploadConfig) -> int:
    exit_code = 0
    async with UploadOrchestrator(config) as orchestrator:
        for source in sources:
            try:
                metadata = await orchestrator.probe(source)
            except UploadError as exc:
                print(f"ERROR: {source.name}: {exc}", file=sys.stderr)
                exit_code = 1
                continue
            render_probe(source.name, metadata)
    return exit_code


async def _run_upload(
    sources: List[Path],
    bucket: BucketClass,
    config: UploadConfig,
    thumbnail: bool,
    thumbnail_required: bool,
) -> int:
    if not config.api_url:
        raise CLIError("MEDIAUP_API_URL environment variable is not set")

    session = _session_from_env()
    if session is None and config.session_file is None:
        raise CLIError("no session: set MEDIAUP_ACCESS_TOKEN or MEDIAUP_SESSION_FILE")
    store = MemorySessionStore(session) if session is not None else None

    display = UploadProgressDisplay()
    async with UploadOrchestrator(config, session_store=store) as orchestrator:
        orchestrator.on(PROGRESS, display.on_progress)
        orchestrator.on(RETRY, display.on_retry)
        orchestrator.on(FALLBACK, display.on_fallback)

        display.start()
        try:
            results = await orchestrator.upload_many(
                sources,
                bucket,
                thumbnail=thumbnail,
                thumbnail_required=thumbnail_required,
            )
        finally:
            display.stop()

    for result in results:
        display.on_result(result)
    display.on_finish(results)
    return 0 if all(r.status == UploadStatus.SUCCESS for r in results) else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mediaup",
        description="Upload images and videos to storage through presigned URLs.",
    )
    parser.add_argument("sources", nargs="*", type=Path, help="Files to upload")
    parser.add_argument(
        "-b",
        "--bucket",
        default=None,
        help=(
            "Bucket class: "
            + ", ".join(b.value for b in BucketClass)
            + " (default from MEDIAUP_BUCKET or posts)"
        ),
    )
    parser.add_argument(
        "--no-compress",
        action="store_true",
        help="Upload images as-is instead of resizing and re-encoding",
    )
    parser.add_argument(
        "--no-thumbnail",
        action="store_true",
        help="Do not generate a cover thumbnail for videos",
    )
    parser.add_argument(
        "--require-thumbnail",
        action="store_true",
        help="Fail a video upload when its thumbnail cannot be produced",
    )
    parser.add_argument(
        "--probe",
        action="store_true",
        help="Print video metadata (duration, size) and exit without uploading",
    )
    parser.add_argument(
        "--no-fallback",
        action="store_true",
        help="Never route through the server-side upload proxy",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"mediaup {__version__}",
    )
    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1

    effective_log_mode = _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level,
    )

    if not args.sources:
        parser.print_help()
        return 0

    sources = [Path(s).expanduser() for s in args.sources]
    missing = [s for s in sources if not s.is_file()]
    if missing:
        print(f"ERROR: source does not exist: {missing[0]}", file=sys.stderr)
        return 1

    try:
        bucket = BucketClass.parse(args.bucket or os.getenv("MEDIAUP_BUCKET") or "posts")
        config = _build_config(args)
    except (ValueError, CLIError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    thumbnail = not args.no_thumbnail or args.require_thumbnail
    total_size = sum(s.stat().st_size for s in sources)
    render_configuration_summary(
        {
            "Sources": f"{len(sources)} file(s), {_human_size(total_size)}",
            "Bucket": bucket.value,
            "API": config.api_url or "(missing)",
            "Mode": "probe" if args.probe else "upload",
            "Compress Images": "yes" if config.compress_images else "no",
            "Thumbnail": "required" if args.require_thumbnail else "yes" if thumbnail else "no",
            "Fallback": "yes" if config.enable_fallback else "no",
            "Max Retries": config.max_retries,
            "Concurrency": config.max_concurrent_uploads,
            "Env File": str(used_env_file) if used_env_file else "-",
            "Logging": effective_log_mode,
        }
    )

    try:
        if args.probe:
            return asyncio.run(_run_probe(sources, config))
        return asyncio.run(
            _run_upload(
                sources,
                bucket,
                config,
                thumbnail=thumbnail,
                thumbnail_required=args.require_thumbnail,
            )
        )
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return 130


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()

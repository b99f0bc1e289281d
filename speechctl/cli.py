"""speechctl - Command-line shell.

Thin argparse layer over the orchestrator. Parses flags, wires signals and
--timeout into a CancelToken, renders results (text or --json) and maps
error codes to exit code classes.

    speechctl stt [--install] [--model NAME] [--device auto|cpu|gpu] ...
    speechctl tts [--install] [--voice NAME] [--device auto|cpu|gpu] ...
    speechctl check [--repair] [--json]
    speechctl list [--json]
    speechctl version | -v | --version
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from collections.abc import Sequence

from speechctl import __version__
from speechctl.config import load_config
from speechctl.errors import ErrorCode, ExitCode, SpeechctlError
from speechctl.orchestrator import check, install, list_installed
from speechctl.schemas import ErrorResponse, InstallRecordView
from speechctl.utils.cancel import CancelToken
from speechctl.utils.paths import variant_dir_name

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _add_component_parser(subparsers, component: str, variant_flag: str, variant_help: str) -> None:
    parser = subparsers.add_parser(component, help=f"Show or install the {component.upper()} component")
    parser.add_argument("--install", action="store_true", help="Install or update the component")
    parser.add_argument("--dest", help="Install root (default: $SPEECH_MODELS_DIR or ./speech)")
    parser.add_argument(
        "--device",
        choices=("auto", "cpu", "gpu"),
        default="auto",
        help="Device to install for (default: auto)",
    )
    parser.add_argument(variant_flag, dest="variant", default="", help=variant_help)
    parser.add_argument("--manifest", help="Manifest URL or path (default: $SPEECH_MANIFEST_URL)")
    parser.add_argument("--offline", action="store_true", help="Never touch the network")
    parser.add_argument("--upgrade", action="store_true", help="Re-download even if up to date")
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON")
    parser.add_argument("--timeout", type=float, default=None, help="Give up after this many seconds")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="speechctl", description="Install and inspect speech STT/TTS assets")
    parser.add_argument("-v", "--version", action="version", version=f"speechctl {__version__}")
    parser.add_argument("--verbose", action="count", default=0, help="Increase log verbosity (repeat for debug)")
    subparsers = parser.add_subparsers(dest="command")

    _add_component_parser(subparsers, "stt", "--model", "STT model name (default: manifest default)")
    _add_component_parser(subparsers, "tts", "--voice", "TTS voice name (default: manifest default)")

    check_parser = subparsers.add_parser("check", help="Verify installed components")
    check_parser.add_argument("--dest", help="Install root (default: $SPEECH_MODELS_DIR or ./speech)")
    check_parser.add_argument("--repair", action="store_true", help="Rebuild a corrupt store from install receipts")
    check_parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON")

    list_parser = subparsers.add_parser("list", help="List installed components")
    list_parser.add_argument("--dest", help="Install root (default: $SPEECH_MODELS_DIR or ./speech)")
    list_parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON")

    subparsers.add_parser("version", help="Print the speechctl version")
    subparsers.add_parser("help", help="Show this help")
    return parser


def _configure_logging(verbosity: int) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def _install_signal_handlers(token: CancelToken) -> dict:
    previous = {}

    def handler(signum, _frame):
        token.cancel(f"interrupted by {signal.Signals(signum).name}")

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, handler)
        except ValueError:
            # Not the main thread
            pass
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for signum, old in previous.items():
        signal.signal(signum, old)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _record_line(record: InstallRecordView) -> str:
    return (
        f"{record.component}/{variant_dir_name(record.variant)}  {record.release_version}  "
        f"{record.device or '-'}  {record.install_path}"
    )


def _run_component(args: argparse.Namespace) -> int:
    if args.install:
        token = CancelToken(timeout_seconds=args.timeout)
        previous = _install_signal_handlers(token)
        try:
            config = load_config(dest=args.dest, manifest_url=args.manifest)
            result = install(
                args.command,
                device=args.device,
                variant=args.variant,
                offline=args.offline,
                upgrade=args.upgrade,
                config=config,
                cancel=token,
            )
        finally:
            _restore_signal_handlers(previous)

        if args.json:
            _print_json(result.model_dump(mode="json"))
        else:
            for warning in result.warnings:
                print(f"warning: {warning}", file=sys.stderr)
            print(
                f"{result.component}/{variant_dir_name(result.variant)}: {result.status.replace('_', ' ')} "
                f"({result.version}, {result.device}) at {result.installed_path}"
            )
        return ExitCode.OK

    config = load_config(dest=args.dest)
    records = [r for r in list_installed(config) if r.component == args.command]
    if args.variant:
        records = [r for r in records if r.variant == args.variant]

    if args.json:
        _print_json({"component": args.command, "installed": [r.model_dump(mode="json") for r in records]})
    elif not records:
        print(f"{args.command}: not installed (run `speechctl {args.command} --install`)")
    else:
        for record in records:
            print(_record_line(record))
    return ExitCode.OK


def _run_check(args: argparse.Namespace) -> int:
    result = check(load_config(dest=args.dest), repair=args.repair)

    if args.json:
        _print_json({**result.model_dump(mode="json"), "ok": result.ok})
    else:
        if result.repaired:
            print("install store rebuilt from receipts")
        if not result.components:
            print("nothing installed")
        for status in result.components:
            state = "ok" if status.ok else f"FAILED: {status.problem}"
            print(f"{status.component}/{variant_dir_name(status.variant)}  {status.version}  {state}")
    return ExitCode.OK if result.ok else ExitCode.INTEGRITY


def _run_list(args: argparse.Namespace) -> int:
    records = list_installed(load_config(dest=args.dest))
    if args.json:
        _print_json([r.model_dump(mode="json") for r in records])
    elif not records:
        print("nothing installed")
    else:
        for record in records:
            print(_record_line(record))
    return ExitCode.OK


def _report_error(error_code: str, message: str, exit_code: int, as_json: bool) -> int:
    if as_json:
        response = ErrorResponse(error_code=error_code, error_message=message, exit_code=exit_code)
        _print_json(response.model_dump())
    else:
        print(f"error [{error_code}]: {message}", file=sys.stderr)
    return exit_code


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return _exit_code(exc)

    _configure_logging(args.verbose)
    as_json = getattr(args, "json", False)

    if args.command is None:
        parser.print_help(sys.stderr)
        return ExitCode.USAGE
    if args.command == "help":
        parser.print_help()
        return ExitCode.OK
    if args.command == "version":
        print(f"speechctl {__version__}")
        return ExitCode.OK

    try:
        if args.command in ("stt", "tts"):
            return _run_component(args)
        if args.command == "check":
            return _run_check(args)
        return _run_list(args)
    except SpeechctlError as e:
        logger.debug("Command failed", exc_info=True)
        return _report_error(e.error_code, e.message, e.exit_code, as_json)
    except KeyboardInterrupt:
        return _report_error(ErrorCode.CANCELLED, "interrupted", ExitCode.INTERNAL, as_json)
    except Exception as e:
        logger.exception("Unexpected error")
        return _report_error(ErrorCode.INTERNAL_ERROR, str(e), ExitCode.INTERNAL, as_json)


def _exit_code(exc: SystemExit) -> int:
    code = exc.code
    if isinstance(code, int):
        return code
    return ExitCode.USAGE


if __name__ == "__main__":
    raise SystemExit(main())

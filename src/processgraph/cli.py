"""Command-line interface for processgraph convert/route/render workflows."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import traceback
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .codec import CodecError, export_interchange_xml, export_snapshot, parse_interchange_xml, parse_snapshot
from .config import DEFAULT_PREVIEW, DEFAULT_ROUTING
from .preview import render_png
from .routing import arrow_orientation, arrow_position
from .store import GraphStore

logger = logging.getLogger(__name__)

SUBCOMMANDS_HINT = "Use one of: convert, route, render."


@dataclass
class CliError(Exception):
    code: str
    message: str
    hint: Optional[str] = None
    exit_code: int = 1
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    retryable: bool = True


class UsageError(Exception):
    pass


class FriendlyArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # pragma: no cover - argparse callback
        raise UsageError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = FriendlyArgumentParser(
        prog="processgraph",
        description="Convert, route and preview process diagrams.",
    )
    parser.add_argument("--error-format", choices=["text", "json"], default="text")
    parser.add_argument("--debug", action="store_true")

    subparsers = parser.add_subparsers(dest="command")

    convert_parser = subparsers.add_parser("convert", help="Convert between snapshot JSON and BPMN XML")
    convert_parser.add_argument("input", nargs="?", help="Input .json snapshot or .bpmn file")
    convert_parser.add_argument("--text", help="Raw snapshot JSON or BPMN XML")
    convert_parser.add_argument("--to", choices=["json", "xml"], help="Output format (default: the other one)")
    convert_parser.add_argument("--stdout", action="store_true", help="Write the result to stdout")
    convert_parser.add_argument("-o", "--output", help="Output path")

    route_parser = subparsers.add_parser("route", help="Print routed connection geometry as JSON")
    route_parser.add_argument("input", nargs="?", help="Input .json snapshot or .bpmn file")
    route_parser.add_argument("--text", help="Raw snapshot JSON or BPMN XML")
    route_parser.add_argument("--connection", help="Only route this connection id")
    route_parser.add_argument("--divisions", type=int, default=DEFAULT_ROUTING.sample_divisions)

    render_parser = subparsers.add_parser("render", help="Render a top-down PNG preview")
    render_parser.add_argument("input", nargs="?", help="Input .json snapshot or .bpmn file")
    render_parser.add_argument("--text", help="Raw snapshot JSON or BPMN XML")
    render_parser.add_argument("--stdout", action="store_true", help="Write PNG bytes to stdout")
    render_parser.add_argument("-o", "--output", help="Output .png path")
    render_parser.add_argument("--padding", type=float, default=DEFAULT_PREVIEW.padding)
    render_parser.add_argument("--scale", type=float, default=DEFAULT_PREVIEW.scale)

    return parser


def _is_interchange(text: str) -> bool:
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        return False
    local = root.tag.split("}", 1)[1] if root.tag.startswith("{") else root.tag
    return local == "definitions"


def _read_input(path: Optional[str], text: Optional[str]) -> tuple[str, str, Optional[Path]]:
    if path and text is not None:
        raise CliError(
            "E_ARGS",
            "--text cannot be combined with file input",
            hint="Use either FILE or --text.",
            exit_code=2,
        )

    if text is not None:
        return text, "<text>", None

    if path:
        input_path = Path(path)
        if not input_path.exists():
            raise CliError(
                "E_IO_READ",
                f"input file not found: {input_path}",
                exit_code=2,
                file=str(input_path),
            )
        try:
            return input_path.read_text(), str(input_path), input_path
        except OSError as exc:
            raise CliError(
                "E_IO_READ",
                f"failed to read input file: {input_path}",
                hint=str(exc),
                exit_code=2,
                file=str(input_path),
            )

    if sys.stdin.isatty():
        raise CliError(
            "E_ARGS",
            "no input provided",
            hint="Use a subcommand with FILE, --text, or pipe stdin.",
            exit_code=2,
        )

    data = sys.stdin.read()
    if not data.strip():
        raise CliError(
            "E_ARGS",
            "stdin was empty",
            hint="Pipe snapshot JSON or BPMN XML into stdin.",
            exit_code=2,
        )
    return data, "<stdin>", None


def _load_store(source: str, source_name: str) -> tuple[GraphStore, str]:
    store = GraphStore()
    if _is_interchange(source):
        document = parse_interchange_xml(source, footprint=store.footprint_config)
        source_format = "xml"
    else:
        document = parse_snapshot(source)
        source_format = "json"
    for warning in document.warnings:
        logger.warning("%s: %s", source_name, warning)
    store.replace_diagram(document, f"Loaded {source_name}.")
    return store, source_format


def _write_text(path: Path, content: str) -> None:
    try:
        path.write_text(content)
    except OSError as exc:
        raise CliError(
            "E_IO_WRITE",
            f"failed to write output file: {path}",
            hint=str(exc),
            exit_code=4,
            file=str(path),
        )


def _write_bytes(path: Path, content: bytes) -> None:
    try:
        path.write_bytes(content)
    except OSError as exc:
        raise CliError(
            "E_IO_WRITE",
            f"failed to write output file: {path}",
            hint=str(exc),
            exit_code=4,
            file=str(path),
        )


def _check_output_args(args: argparse.Namespace) -> None:
    if args.stdout and args.output:
        raise CliError(
            "E_ARGS",
            "--stdout and --output are mutually exclusive",
            hint="Choose either --stdout or --output.",
            exit_code=2,
        )


def _error_from_exception(exc: Exception) -> CliError:
    if isinstance(exc, CliError):
        return exc
    if isinstance(exc, CodecError):
        if exc.code == "E_PARSE":
            return CliError(
                "E_PARSE",
                exc.message,
                hint="Ensure input is well-formed JSON or XML and escape &, <, > in XML text.",
                exit_code=2,
                line=exc.line,
                column=exc.column,
            )
        return CliError(
            "E_CODEC",
            exc.message,
            hint="Check the snapshot fields or the BPMN process element.",
            exit_code=3,
        )
    if isinstance(exc, ValueError):
        return CliError(
            "E_ARGS",
            str(exc),
            hint="Check the numeric options and retry.",
            exit_code=2,
        )
    return CliError(
        "E_INTERNAL",
        str(exc) or exc.__class__.__name__,
        hint="Re-run with --debug to see traceback.",
        exit_code=1,
        retryable=False,
    )


def _emit_error(err: CliError, *, error_format: str) -> None:
    if error_format == "json":
        payload = {
            "ok": False,
            "code": err.code,
            "message": err.message,
            "file": err.file,
            "line": err.line,
            "column": err.column,
            "hint": err.hint,
            "retryable": err.retryable,
        }
        sys.stderr.write(json.dumps(payload) + "\n")
        return

    sys.stderr.write(f"error[{err.code}]: {err.message}\n")
    if err.hint:
        sys.stderr.write(f"hint: {err.hint}\n")


def _handle_convert(args: argparse.Namespace) -> int:
    _check_output_args(args)
    source, source_name, source_path = _read_input(args.input, args.text)
    store, source_format = _load_store(source, source_name)

    target = args.to or ("json" if source_format == "xml" else "xml")
    if target == "xml":
        text = export_interchange_xml(store)
        suffix = ".bpmn"
    else:
        text = export_snapshot(store)
        suffix = ".json"

    if args.stdout or source_path is None:
        sys.stdout.write(text)
        if not text.endswith("\n"):
            sys.stdout.write("\n")
        return 0

    output_path = Path(args.output) if args.output else source_path.with_suffix(suffix)
    if output_path.resolve() == source_path.resolve():
        raise CliError(
            "E_ARGS",
            f"refusing to overwrite the input file: {output_path}",
            hint="Pass --output with a different path.",
            exit_code=2,
        )
    _write_text(output_path, text)
    print(f"Wrote {output_path}")
    return 0


def _handle_route(args: argparse.Namespace) -> int:
    if args.divisions <= 0:
        raise CliError(
            "E_ARGS",
            "--divisions must be > 0",
            hint="Use a positive sample count like 20.",
            exit_code=2,
        )
    source, source_name, _source_path = _read_input(args.input, args.text)
    store, _source_format = _load_store(source, source_name)

    connections = store.connections()
    if args.connection is not None:
        connections = [conn for conn in connections if conn.id == args.connection]
        if not connections:
            raise CliError(
                "E_NOT_FOUND",
                f"connection not found: {args.connection}",
                hint="Check connection ids in the input diagram.",
                exit_code=4,
            )

    routes = []
    for conn in connections:
        path = store.route(conn.id)
        position = arrow_position(path, args.divisions)
        routes.append(
            {
                "id": conn.id,
                "sourceId": conn.source_id,
                "targetId": conn.target_id,
                "length": path.length(),
                "points": [list(point) for point in path.sample_points(args.divisions)],
                "arrow": {
                    "position": list(position) if position is not None else None,
                    "orientation": list(arrow_orientation(path, args.divisions)),
                },
                "tubeRadius": store.tube_radius(conn.id),
            }
        )

    payload = {"ok": True, "processId": store.process_id, "connections": routes}
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    return 0


def _handle_render(args: argparse.Namespace) -> int:
    _check_output_args(args)
    if args.scale <= 0:
        raise CliError(
            "E_ARGS",
            "--scale must be > 0",
            hint="Use a positive scale factor like 40.",
            exit_code=2,
        )

    source, source_name, source_path = _read_input(args.input, args.text)
    store, _source_format = _load_store(source, source_name)
    png_bytes = render_png(
        store.nodes(),
        store.connections(),
        scale=args.scale,
        padding=args.padding,
        routing_config=store.routing_config,
        footprint=store.footprint_config,
    )

    if args.stdout or source_path is None:
        sys.stdout.buffer.write(png_bytes)
        return 0

    output_path = Path(args.output) if args.output else source_path.with_suffix(".png")
    _write_bytes(output_path, png_bytes)
    print(f"Wrote {output_path}")
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    parser = _build_parser()

    if not raw_argv:
        err = CliError("E_ARGS", "missing subcommand", hint=SUBCOMMANDS_HINT, exit_code=2)
        _emit_error(err, error_format="text")
        return err.exit_code

    debug_enabled = "--debug" in raw_argv or os.getenv("PROCESSGRAPH_DEBUG") == "1"
    error_format = "text"
    if "--error-format" in raw_argv:
        idx = raw_argv.index("--error-format")
        if idx + 1 < len(raw_argv):
            error_format = raw_argv[idx + 1]

    logging.basicConfig(
        level=logging.DEBUG if debug_enabled else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )

    try:
        args = parser.parse_args(raw_argv)
        error_format = args.error_format

        if args.command == "convert":
            return _handle_convert(args)
        if args.command == "route":
            return _handle_route(args)
        if args.command == "render":
            return _handle_render(args)

        raise CliError("E_ARGS", "missing subcommand", hint=SUBCOMMANDS_HINT, exit_code=2)
    except UsageError as exc:
        err = CliError("E_ARGS", str(exc), hint=SUBCOMMANDS_HINT, exit_code=2)
        _emit_error(err, error_format=error_format)
        return err.exit_code
    except Exception as exc:  # pragma: no cover - exercised in integration tests
        err = _error_from_exception(exc)
        _emit_error(err, error_format=error_format)
        if debug_enabled:
            traceback.print_exc(file=sys.stderr)
        return err.exit_code


if __name__ == "__main__":
    raise SystemExit(main())

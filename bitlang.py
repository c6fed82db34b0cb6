"""BIT entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import Callable, List, Optional, Sequence

from bitio import OUTPUT_ASCII, OUTPUT_BITS, bits_from_text
from extensions import BITExtensionError, RuntimeServices, build_default_services, load_runtime_services
from interpreter import BITRuntimeError, Interpreter, TracebackFormatter
from scanner import BITParseError


def _report_runtime_error(interpreter: Interpreter, error: BITRuntimeError, *, verbose: bool, as_json: bool) -> None:
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
    if as_json:
        print(formatter.to_json(error), file=sys.stderr)


def run_repl(
    verbose: bool,
    *,
    services: Optional[RuntimeServices] = None,
    output_mode: str = OUTPUT_BITS,
    input_provider: Optional[Callable[[], object]] = None,
) -> int:
    print("\x1b[38;2;153;221;255mBIT\033[0m REPL. Enter lines, blank line to run buffer.") # "BIT" in light blue
    had_output = False

    def _output_sink(text: str) -> None:
        nonlocal had_output
        had_output = True
        print(text, end="", flush=True)

    interpreter = Interpreter(
        source="",
        filename="<repl>",
        verbose=verbose,
        services=services,
        input_provider=input_provider,
        output_sink=_output_sink,
        output_mode=output_mode,
    )
    buffer: List[str] = []

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m " # light blue
        if had_output:
            # Ensure prompt starts on a fresh line if the program printed anything
            print()
            had_output = False
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        if line.strip() != "":
            buffer.append(line)
            continue
        if not buffer:
            continue

        interpreter.source = "\n".join(buffer)
        buffer.clear()
        try:
            interpreter.run()
        except BITParseError as error:
            print(error.format_text(), file=sys.stderr)
        except BITRuntimeError as error:
            _report_runtime_error(interpreter, error, verbose=verbose, as_json=False)

    return 0


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="BIT reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit memory snapshots in tracebacks and list loaded extensions")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("-ascii", "--ascii", dest="ascii", action="store_true", help="Pack every 8 printed bits into one character")
    parser.add_argument("-input", "--input", dest="input_bits", default=None, help="Bits to feed READ instead of standard input, e.g. 0110")
    parser.add_argument("-ext", "--ext", dest="extensions", action="append", default=[], help="Load an extension module (repeatable)")
    args = parser.parse_args(argv)

    try:
        services = load_runtime_services(args.extensions) if args.extensions else build_default_services()
    except BITExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1
    if args.verbose:
        for description in services.describe():
            print(f"Loaded extension {description}", file=sys.stderr)

    output_mode = OUTPUT_ASCII if args.ascii else OUTPUT_BITS
    input_provider = bits_from_text(args.input_bits).read_bit if args.input_bits is not None else None

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, services=services, output_mode=output_mode, input_provider=input_provider)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    interpreter = Interpreter(
        source=source_text,
        filename=filename,
        verbose=args.verbose,
        services=services,
        input_provider=input_provider,
        output_mode=output_mode,
    )
    try:
        interpreter.run()
    except BITParseError as error:
        print(error.format_text(), file=sys.stderr)
        return 1
    except BITRuntimeError as error:
        _report_runtime_error(interpreter, error, verbose=args.verbose, as_json=args.traceback_json)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())

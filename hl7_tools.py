#!/usr/bin/env python3
"""Command line front end for the HL7 text tools."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from field_locator import FindResult
from hl7_parser import detect_line_terminator
from hl7_schema import SchemaCatalog
from preferences import Preferences, load_preferences
from segment_tools import extract_field_values
from session import DocumentSession

logger = logging.getLogger(__name__)


def _read(path: str, encoding: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, "r", encoding=encoding, newline="") as fh:
        return fh.read()


def _session(args, prefs: Preferences) -> DocumentSession:
    catalog = SchemaCatalog(
        default_version=prefs.default_schema_version,
        custom_segments=prefs.custom_segment_schema or None,
    )
    return DocumentSession(_read(args.file, prefs.socket_encoding), catalog=catalog, preferences=prefs)


def cmd_find(args, prefs: Preferences) -> int:
    session = _session(args, prefs)
    matches = []
    outcome = session.find(args.query)
    while outcome.found:
        matches.append(outcome.match)
        outcome = session.find_next()
        if outcome.result is FindResult.WRAPPED_TO_START:
            break
    if not matches:
        print(f"A field matching {args.query} could not be located in the message")
        return 1
    for match in matches:
        value = match.text(session.text)
        print(f"{match.line_number:<7}{match.location:<8}{value}  ({match.description})")
    return 0


def cmd_validate(args, prefs: Preferences) -> int:
    session = _session(args, prefs)
    missing = session.check_required_fields()
    if not missing:
        print("All required fields are present in the message and contain values")
        return 0
    print("The following required fields are missing, or contained no value:\n")
    print("Line   Field   Description\n----   -----   -----------")
    for item in missing:
        print(item)
    print("\nConditional fields and data types are not checked.")
    return 1


def cmd_extract(args, prefs: Preferences) -> int:
    session = _session(args, prefs)
    extracted = session.extract_segments(args.line)
    if extracted is None:
        print("The line does not appear to be a valid segment.", file=sys.stderr)
        return 1
    print(extracted.replace("\r", "\n"))
    return 0


def cmd_describe(args, prefs: Preferences) -> int:
    session = _session(args, prefs)
    tree = session.describe_segment(args.line)
    if tree is None:
        print("The line does not appear to be a valid segment.", file=sys.stderr)
        return 1
    print(tree)
    return 0


def cmd_split(args, prefs: Preferences) -> int:
    session = _session(args, prefs)
    split = session.split_batch()
    if split.requires_confirmation and not args.yes:
        print(f"This will create {split.count} files. Re-run with --yes to continue.", file=sys.stderr)
        return 2
    out = Path(args.output_dir)
    out.mkdir(parents=True, exist_ok=True)
    stem = Path(args.file).stem if args.file != "-" else "message"
    for index, message in enumerate(split.messages, start=1):
        target = out / f"{stem}_{index:04d}.hl7"
        with open(target, "w", encoding=prefs.socket_encoding, newline="") as fh:
            fh.write(message)
    logger.info("wrote %d messages to %s", split.count, out)
    return 0


def cmd_fields(args, prefs: Preferences) -> int:
    values = extract_field_values((_read(p, prefs.socket_encoding) for p in args.files), args.location)
    for index, value in values:
        print(f"{args.files[index]}\t{value}")
    return 0


def cmd_linebreaks(args, prefs: Preferences) -> int:
    session = _session(args, prefs)
    text = session.add_linebreaks()
    sys.stdout.write(text.replace(detect_line_terminator(text), "\n"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="HL7 v2 message tools")
    parser.add_argument("--preferences", default=None, help="JSON preferences file")
    parser.add_argument("--schema-version", default=None, help="fallback schema version")
    parser.add_argument("--custom-schema", default=None, help="JSON file with custom segment definitions")
    parser.add_argument("--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("find", help="locate a field (PID-3, PID-5.1) or a field name fragment")
    p.add_argument("file")
    p.add_argument("query")
    p.set_defaults(func=cmd_find)

    p = sub.add_parser("validate", help="report required fields with no value")
    p.add_argument("file")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("extract", help="print all segments of the same type as the given line")
    p.add_argument("file")
    p.add_argument("line", type=int)
    p.set_defaults(func=cmd_extract)

    p = sub.add_parser("describe", help="show the fields of the segment on the given line")
    p.add_argument("file")
    p.add_argument("line", type=int)
    p.set_defaults(func=cmd_describe)

    p = sub.add_parser("split", help="split a batch file into one file per message")
    p.add_argument("file")
    p.add_argument("--output-dir", default=".")
    p.add_argument("--threshold", type=int, default=None)
    p.add_argument("--yes", action="store_true", help="confirm large splits")
    p.set_defaults(func=cmd_split)

    p = sub.add_parser("fields", help="extract a field from several messages")
    p.add_argument("location")
    p.add_argument("files", nargs="+")
    p.set_defaults(func=cmd_fields)

    p = sub.add_parser("linebreaks", help="put each segment on its own line")
    p.add_argument("file")
    p.set_defaults(func=cmd_linebreaks)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    prefs = load_preferences(args.preferences)
    if args.schema_version:
        prefs.default_schema_version = args.schema_version
    if args.custom_schema:
        prefs.custom_segment_schema = args.custom_schema
    if getattr(args, "threshold", None) is not None:
        prefs.batch_split_threshold = args.threshold
    return args.func(args, prefs)


if __name__ == "__main__":
    sys.exit(main())

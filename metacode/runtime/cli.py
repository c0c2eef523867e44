"""Command-line interface: expand captures defined in a Python file."""
from __future__ import annotations

import argparse
import runpy
import sys

from ..constants import LOGBOOK_FILE, PUB_FILE
from ..logger import get_logger, setup_logging
from .analysis import check_program_order, explain_binding, export_graphviz
from .captures import Capture
from .core import MetaError
from .crypto import verify_signature
from .expansion import ExpansionContext
from .ledger import (
    build_script_document,
    find_entry,
    record_expansion,
    show_logbook,
    write_script,
)
from .quoting import quote

logger = get_logger(__name__)


def parse_args(args):
    argp = argparse.ArgumentParser(
        prog="metacode",
        description="Generate a standalone script from captures defined in a Python file",
    )
    argp.add_argument("path", nargs="?", help="Python file that declares the captures")
    argp.add_argument(
        "targets",
        nargs="*",
        help="Captures to expand, in order (variable name, binding name or identity)",
    )
    argp.add_argument(
        "--setup",
        action="append",
        metavar="CODE",
        help="Literal setup code emitted before the targets (repeatable)",
    )
    argp.add_argument("-o", "--output", metavar="FILE", help="Write the script to FILE")
    argp.add_argument(
        "--graph",
        metavar="FILE",
        help="Export the dependency graph (.dot is written raw, other formats need Graphviz)",
    )
    argp.add_argument("--why", metavar="NAME", help="Explain which captures a binding uses")
    argp.add_argument(
        "--check", action="store_true", help="Verify every binding is assigned before use"
    )
    argp.add_argument(
        "--record", action="store_true", help="Append the script hash to the logbook"
    )
    argp.add_argument(
        "--sign", action="store_true", help="Record and sign the script hash"
    )
    argp.add_argument("--logbook", action="store_true", help="Show the script logbook")
    argp.add_argument(
        "--logbook-file", default=LOGBOOK_FILE, help="Logbook path (default: %(default)s)"
    )
    argp.add_argument(
        "--verify", metavar="HASH", help="Verify the recorded signature for a script hash"
    )
    argp.add_argument("--public-key", default=PUB_FILE, help="Public key used by --verify")
    argp.add_argument("--log-level", help="Logging level (default: $METACODE_LOG_LEVEL)")

    return argp.parse_args(args)


def _lookup(namespace, target):
    value = namespace.get(target)
    if isinstance(value, Capture):
        return value
    for candidate in namespace.values():
        if isinstance(candidate, Capture) and target in (candidate.identity, candidate.name):
            return candidate
    return None


def _verify(params):
    entry = find_entry(params.verify, params.logbook_file)
    if entry is None or not entry.get("signature"):
        print("✗ No signed logbook entry for that hash")
        return 1
    ok = verify_signature(params.verify, entry["signature"], params.public_key)
    print("✓ Signature valid" if ok else "✗ Invalid signature")
    return 0 if ok else 1


def main(args):
    params = parse_args(args)
    setup_logging(params.log_level)

    if params.logbook:
        show_logbook(params.logbook_file)
        return 0
    if params.verify:
        return _verify(params)
    if not params.path or not params.targets:
        print("✗ A source file and at least one target are required")
        return 2

    namespace = runpy.run_path(params.path, run_name="__metacode__")
    roots = [quote(code, filename="<setup>") for code in params.setup or []]
    for target in params.targets:
        found = _lookup(namespace, target)
        if found is None:
            print(f"✗ No capture named {target!r} in {params.path}")
            return 2
        roots.append(found)

    context = ExpansionContext()
    try:
        program = context.expand(*roots)
    except MetaError as exc:
        logger.debug("Expansion failed", exc_info=True)
        print(f"✗ {exc}")
        return 1

    if params.output:
        write_script(program, params.output)
    else:
        sys.stdout.write(program.to_source())

    if params.check:
        errors = check_program_order(program)
        if errors:
            for e in errors:
                print("  ✗", e)
            return 1
        print("  ✓ Every binding is assigned before it is read")

    if params.why:
        info = explain_binding(context, params.why)
        if not info["found"]:
            print(f"  ✗ No binding named {params.why!r}")
        else:
            for line in info["lines"]:
                print("  " + line)

    if params.graph:
        export_graphviz(context, params.graph)

    if params.record or params.sign:
        doc = build_script_document(program, context)
        record_expansion(
            doc,
            params.logbook_file,
            target=" ".join(params.targets),
            sign=params.sign,
        )
    return 0


def run():  # pragma: no cover - console entry point
    raise SystemExit(main(sys.argv[1:]))


__all__ = [
    "main",
    "parse_args",
]


if __name__ == "__main__":  # pragma: no cover
    run()

"""Provenance records for generated scripts."""

from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import json
from pathlib import Path

from ..constants import KEY_FILE, LOGBOOK_FILE, METACODE_VERSION, PUB_FILE
from . import crypto as _crypto
from .core import Program


def hash_program(program: Program) -> str:
    """SHA-256 of the rendered script, comments included."""

    return hashlib.sha256(program.to_source().encode("utf-8")).hexdigest()


def build_script_document(program: Program, context=None):
    """Create a JSON-safe description of a generated script."""

    doc = {
        "metacode_version": METACODE_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "source": program.to_source(),
        "sha256": hash_program(program),
        "bindings": sorted(program.bindings),
    }
    if context is not None:
        doc["dependencies"] = [list(edge) for edge in context.dependencies]
        doc["names"] = dict(sorted(context.bindings.items()))
    return doc


def write_script(program: Program, path):
    """Write the rendered script to ``path`` and return the path."""

    path = Path(path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(program.to_source(), encoding="utf-8")
    print(f"  ✓ Script written → {path}")
    return path


def record_expansion(
    doc,
    logbook=LOGBOOK_FILE,
    *,
    target=None,
    sign=False,
    key_file=KEY_FILE,
    pub_file=PUB_FILE,
):
    """Append a ledger entry for a generated script, optionally signed."""

    entry = {
        "timestamp": doc["timestamp"],
        "target": target,
        "hash": doc["sha256"],
        "bindings": doc["bindings"],
        "signature": None,
    }
    if sign:
        entry["signature"] = _crypto.sign_hash(doc["sha256"], key_file, pub_file)

    with open(logbook, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry) + "\n")

    print(f"  📜 Recorded{' and signed' if sign else ''} script → {logbook}")
    return entry


def load_logbook(logbook=LOGBOOK_FILE):
    try:
        with open(logbook, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
    except FileNotFoundError:
        return []


def show_logbook(logbook=LOGBOOK_FILE, limit=10):
    """Display recent logbook entries."""

    entries = load_logbook(logbook)[-limit:]
    if not entries:
        print("No logbook yet.")
        return
    print(f"\nmetacode logbook — last {len(entries)} entries:")
    for e in reversed(entries):
        signed = "signed" if e.get("signature") else "unsigned"
        print(f"• {e['timestamp']}  {e.get('target') or '-'}  [{signed}]  {e['hash'][:12]}…")
        if e.get("bindings"):
            print(f"    bindings: {', '.join(e['bindings'])}")


def find_entry(sha256_hex, logbook=LOGBOOK_FILE):
    """Return the most recent ledger entry for a script hash, if any."""

    for entry in reversed(load_logbook(logbook)):
        if entry["hash"] == sha256_hex:
            return entry
    return None


__all__ = [
    "build_script_document",
    "find_entry",
    "hash_program",
    "load_logbook",
    "record_expansion",
    "show_logbook",
    "write_script",
]

import hashlib
import json
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from metacode.constants import METACODE_VERSION
from metacode.runtime import crypto, ledger
from metacode.runtime.captures import capture
from metacode.runtime.expansion import ExpansionContext
from metacode.runtime.quoting import uq

LIMIT = 5


@capture
def numbers():
    "Numbers up to the limit"
    return list(range(uq(LIMIT)))


@capture
def squares():
    return [n * n for n in uq(numbers())]


def _expanded():
    ctx = ExpansionContext()
    return ctx, ctx.expand(squares)


def test_hash_program_covers_rendered_source():
    _, program = _expanded()

    expected = hashlib.sha256(program.to_source().encode("utf-8")).hexdigest()
    assert ledger.hash_program(program) == expected


def test_build_script_document_is_json_safe():
    ctx, program = _expanded()

    doc = ledger.build_script_document(program, ctx)

    assert doc["metacode_version"] == METACODE_VERSION
    assert doc["timestamp"].endswith("Z")
    assert doc["bindings"] == ["numbers", "squares"]
    assert doc["names"] == {numbers.identity: "numbers", squares.identity: "squares"}
    assert [numbers.identity, squares.identity] in doc["dependencies"]
    json.dumps(doc)

    bare = ledger.build_script_document(program)
    assert "dependencies" not in bare


def test_write_script_creates_parent_dirs(tmp_path, capsys):
    _, program = _expanded()

    path = ledger.write_script(program, tmp_path / "out" / "script.py")

    assert path.read_text(encoding="utf-8") == program.to_source()
    assert "Script written" in capsys.readouterr().out


def test_record_and_find_unsigned_entry(tmp_path, capsys):
    _, program = _expanded()
    logbook = tmp_path / "logbook.jsonl"
    doc = ledger.build_script_document(program)

    entry = ledger.record_expansion(doc, logbook, target="squares")

    assert entry["signature"] is None
    assert ledger.load_logbook(logbook) == [entry]
    assert ledger.find_entry(doc["sha256"], logbook) == entry
    assert ledger.find_entry("0" * 64, logbook) is None

    ledger.show_logbook(logbook)
    out = capsys.readouterr().out
    assert "squares" in out
    assert "unsigned" in out


def test_missing_logbook_is_empty(tmp_path, capsys):
    missing = tmp_path / "none.jsonl"

    assert ledger.load_logbook(missing) == []
    ledger.show_logbook(missing)
    assert "No logbook yet." in capsys.readouterr().out


def test_signed_entries_verify_against_public_key(tmp_path):
    _, program = _expanded()
    key_file = tmp_path / "private.pem"
    pub_file = tmp_path / "public.pem"
    logbook = tmp_path / "logbook.jsonl"
    doc = ledger.build_script_document(program)

    entry = ledger.record_expansion(
        doc, logbook, sign=True, key_file=key_file, pub_file=pub_file
    )

    assert key_file.exists() and pub_file.exists()
    assert crypto.verify_signature(doc["sha256"], entry["signature"], pub_file)
    assert not crypto.verify_signature("f" * 64, entry["signature"], pub_file)
    assert not crypto.verify_signature(doc["sha256"], "zz", pub_file)


def test_keypair_is_reused(tmp_path):
    key_file = tmp_path / "private.pem"
    pub_file = tmp_path / "public.pem"

    crypto.ensure_keypair(key_file, pub_file)
    first = key_file.read_bytes()
    crypto.ensure_keypair(key_file, pub_file)

    assert key_file.read_bytes() == first

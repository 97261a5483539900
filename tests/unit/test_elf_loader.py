"""Tests for the ELF loader."""

import pytest

from mitiscan.binary.artifact import SPECTRE_OPT_OUT, BinaryFormat, SymbolBinding, SymbolKind
from mitiscan.binary.loader import load_binary
from mitiscan.config.models import LoaderConfig
from mitiscan.errors import MalformedError


def _load(image, **options):
    (artifact,) = load_binary(image, "test.elf", LoaderConfig(**options))
    return artifact


def test_header_fields(make_elf):
    artifact = _load(make_elf(text=b"\x90\xc3"))
    assert artifact.format == BinaryFormat.ELF
    assert artifact.architecture == "x86_64"
    assert artifact.word_size == 64
    assert artifact.endianness == "little"
    assert artifact.file_type == "shared_object"
    assert artifact.entry_point == 0x1000
    assert artifact.elf.elf_type == "ET_DYN"
    assert len(artifact.sha256) == 64


def test_aarch64_machine(make_elf):
    assert _load(make_elf(machine=183)).architecture == "arm64"


def test_sections_and_permissions(make_elf):
    artifact = _load(make_elf(text=b"\x90\xc3", data=b"\x01" * 8))
    text = artifact.section_named(".text")
    data = artifact.section_named(".data")
    assert (text.address, text.size, text.executable, text.writable) == (0x1000, 2, True, False)
    assert (data.address, data.writable, data.executable) == (0x2000, True, False)
    assert artifact.read(0x1000, 2) == b"\x90\xc3"
    assert artifact.read(0x2004, 4) == b"\x01" * 4
    assert artifact.read(0x5000, 1) is None


def test_program_headers(make_elf):
    artifact = _load(make_elf(stack_flags=7))
    types = [ph.type for ph in artifact.elf.program_headers]
    assert types == ["PT_PHDR", "PT_LOAD", "PT_GNU_STACK", "PT_GNU_RELRO"]
    assert artifact.elf.segments("PT_GNU_STACK")[0].flags == 7


def test_dynamic_tags(make_elf):
    artifact = _load(make_elf(dynamic=[(30, 0x8), (0x6FFFFFFB, 0x1)]))
    assert artifact.elf.dynamic_values("DT_FLAGS") == (0x8,)
    assert artifact.elf.dynamic_values("DT_FLAGS_1") == (0x1,)
    assert artifact.elf.segments("PT_DYNAMIC")


def test_symbols(make_elf):
    image = make_elf(
        text=b"\xc3\xc3",
        data=b"\x00" * 8,
        symbols=[
            {"name": "main", "value": 0x1000, "size": 1},
            {"name": "helper", "value": 0x1001, "size": 1, "bind": "local"},
            {"name": "counter", "value": 0x2000, "size": 8, "kind": "object", "section": ".data"},
            {"name": "__stack_chk_fail", "section": None},
        ],
    )
    symbols = {s.name: s for s in _load(image).symbols}
    assert symbols["main"].kind == SymbolKind.FUNCTION
    assert symbols["main"].section == ".text"
    assert symbols["helper"].binding == SymbolBinding.LOCAL
    assert symbols["counter"].kind == SymbolKind.OBJECT
    assert symbols["counter"].section == ".data"
    chk = symbols["__stack_chk_fail"]
    assert not chk.defined
    assert chk.imported


def test_opt_out_patterns_mark_functions(make_elf):
    image = make_elf(
        text=b"\xc3\xc3",
        symbols=[
            {"name": "fast_path", "value": 0x1000, "size": 1},
            {"name": "slow_path", "value": 0x1001, "size": 1},
        ],
    )
    symbols = {s.name: s for s in _load(image, spectre_opt_out=["fast_*"]).symbols}
    assert SPECTRE_OPT_OUT in symbols["fast_path"].markers
    assert SPECTRE_OPT_OUT not in symbols["slow_path"].markers


def test_retpoline_thunk_marked(make_elf):
    image = make_elf(
        text=b"\xc3",
        symbols=[{"name": "__x86_indirect_thunk_rax", "value": 0x1000, "size": 1}],
    )
    (thunk,) = _load(image).symbols
    assert "runtime-thunk" in thunk.markers
    assert SPECTRE_OPT_OUT in thunk.markers


def test_unreadable_debug_info_is_recorded_not_fatal(make_elf):
    artifact = _load(make_elf(debug_info=b"\xff\xff\xff\xff\x01"))
    assert artifact.debug_info_error
    assert artifact.section_named(".debug_info") is not None


def test_no_debug_info(make_elf):
    artifact = _load(make_elf())
    assert artifact.debug_info_error is None
    assert artifact.elf.compilers == ()


def test_bad_class_is_malformed(make_elf):
    image = bytearray(make_elf())
    image[4] = 9
    with pytest.raises(MalformedError):
        load_binary(bytes(image), "bad.elf")


def test_shstrndx_out_of_range_is_malformed(make_elf):
    image = bytearray(make_elf())
    image[62:64] = (200).to_bytes(2, "little")
    with pytest.raises(MalformedError):
        load_binary(bytes(image), "bad.elf")

"""Format dispatch: bytes or path in, immutable artifacts out."""

from __future__ import annotations

import hashlib
from pathlib import Path

from mitiscan.binary.artifact import BinaryArtifact, BinaryFormat
from mitiscan.binary.elf_loader import load_elf
from mitiscan.binary.formats import detect_format
from mitiscan.binary.macho_loader import load_macho
from mitiscan.binary.pe_loader import load_pe
from mitiscan.config.models import LoaderConfig
from mitiscan.errors import UnreadableError, UnsupportedFormatError
from mitiscan.utils.logging import get_logger

log = get_logger(__name__)


def load_binary(
    data: bytes,
    name: str,
    options: LoaderConfig | None = None,
) -> tuple[BinaryArtifact, ...]:
    """Parse ``data`` into one artifact per image (several for fat Mach-O).

    Raises a ``LoadError`` subclass for any input that cannot be described.
    """
    options = options or LoaderConfig()
    data = bytes(data)
    fmt = detect_format(data)
    sha256 = hashlib.sha256(data).hexdigest()
    patterns = tuple(options.spectre_opt_out)

    if fmt == BinaryFormat.ELF:
        artifacts: tuple[BinaryArtifact, ...] = (load_elf(data, name, sha256, patterns),)
    elif fmt == BinaryFormat.PE:
        artifacts = (load_pe(data, name, sha256, patterns),)
    else:
        artifacts = load_macho(data, name, sha256, patterns)

    for artifact in artifacts:
        log.info(
            "binary_loaded",
            binary=artifact.binary_id,
            format=artifact.format.value,
            arch=artifact.architecture,
            sections=len(artifact.sections),
            symbols=len(artifact.symbols),
        )
    return artifacts


def load_path(path: str | Path, options: LoaderConfig | None = None) -> tuple[BinaryArtifact, ...]:
    options = options or LoaderConfig()
    path = Path(path)
    try:
        size = path.stat().st_size
        if size > options.max_file_size:
            raise UnsupportedFormatError(
                f"file is {size} bytes, larger than the {options.max_file_size} byte limit"
            )
        data = path.read_bytes()
    except OSError as exc:
        raise UnreadableError(f"cannot read file: {exc.strerror or exc}") from exc
    return load_binary(data, str(path), options)

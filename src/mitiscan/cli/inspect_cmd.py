"""mitiscan inspect - dump what the loader and resolver see in a binary."""

from __future__ import annotations

from pathlib import Path

import typer


def inspect_cmd(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Binary to inspect"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show format, architecture, header flags, sections and ambiguous symbols."""
    from mitiscan.binary.loader import load_path
    from mitiscan.cli.app import get_context
    from mitiscan.engine.summary import ExitStatus
    from mitiscan.errors import LoadError
    from mitiscan.symbols.resolver import SymbolResolver
    from mitiscan.utils.formatters import console, print_error, print_json, print_table

    cfg = get_context().ensure_config()
    try:
        artifacts = load_path(path, cfg.loader)
    except LoadError as exc:
        print_error(f"{path}: {exc.kind.value}: {exc.message}")
        raise typer.Exit(int(ExitStatus.ERRORS)) from exc

    resolver = SymbolResolver()
    summaries = []
    for artifact in artifacts:
        resolved = resolver.resolve(artifact)
        summaries.append(
            {
                "binary": artifact.binary_id,
                "sha256": artifact.sha256,
                "format": artifact.format.value,
                "architecture": artifact.architecture,
                "word_size": artifact.word_size,
                "file_type": artifact.file_type,
                "entry_point": f"{artifact.entry_point:#x}",
                "flags": _header_flags(artifact),
                "sections": [
                    {
                        "name": s.name,
                        "address": f"{s.address:#x}",
                        "size": s.size,
                        "perms": _perms(s),
                    }
                    for s in artifact.sections
                ],
                "symbols": len(resolved.symbols),
                "functions": len(resolved.symbols.functions()),
                "ambiguous": list(resolved.symbols.ambiguous()),
                "debug_info_error": artifact.debug_info_error,
            }
        )

    if as_json:
        print_json(summaries)
        return

    for summary in summaries:
        console.print(
            f"[bold]{summary['binary']}[/bold]  {summary['format']} {summary['architecture']} "
            f"{summary['file_type']}  entry={summary['entry_point']}"
        )
        console.print(f"  flags: {summary['flags'] or '-'}")
        console.print(
            f"  symbols={summary['symbols']} functions={summary['functions']} "
            f"ambiguous={', '.join(summary['ambiguous']) or '-'}"
        )
        if summary["debug_info_error"]:
            console.print(f"  [yellow]debug info:[/yellow] {summary['debug_info_error']}")
        print_table(summary["sections"], title="Sections")


def _perms(section) -> str:
    return "".join(
        flag if on else "-"
        for flag, on in (("r", section.readable), ("w", section.writable), ("x", section.executable))
    )


def _header_flags(artifact) -> str:
    if artifact.pe is not None:
        pe = artifact.pe
        names = [
            ("DYNAMIC_BASE", pe.dynamic_base),
            ("HIGH_ENTROPY_VA", pe.high_entropy_va),
            ("NX_COMPAT", pe.nx_compat),
            ("GUARD_CF", pe.guard_cf),
            ("RELOCS_STRIPPED", pe.relocs_stripped),
            ("DLL", pe.is_dll),
            ("IL_ONLY", pe.is_il_only),
        ]
        return " ".join(name for name, on in names if on)
    if artifact.elf is not None:
        elf = artifact.elf
        parts = [elf.elf_type]
        parts.extend(ph for ph in ("PT_GNU_STACK", "PT_GNU_RELRO", "PT_INTERP") if elf.segments(ph))
        return " ".join(parts)
    if artifact.macho is not None:
        return f"{artifact.macho.flags:#x}"
    return ""

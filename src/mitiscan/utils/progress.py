"""Rich progress bar for multi-binary scans."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from mitiscan.utils.formatters import err_console


def create_progress() -> Progress:
    # stderr, so piped JSON on stdout stays clean
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        TextColumn("[dim]{task.fields[binary]}"),
        console=err_console,
        transient=True,
    )


@contextmanager
def scan_progress(
    total: int, progress: Progress | None = None
) -> Generator[Callable[[str], None], None, None]:
    """Yield a callback that marks one binary as scanned and shows its name."""
    if progress is None:
        progress = create_progress()
    with progress:
        task_id = progress.add_task("Scanning binaries", total=total, binary="")

        def _scanned(path: str) -> None:
            progress.update(task_id, advance=1, binary=Path(path).name)

        yield _scanned

"""mitiscan quickstart: scan a binary from Python and print its verdicts."""

import sys
from pathlib import Path

from mitiscan import MitiscanContext
from mitiscan.binary.loader import load_path
from mitiscan.config.loader import load_config
from mitiscan.engine.summary import summarize_exit_status
from mitiscan.symbols.resolver import SymbolResolver


def main():
    # 1. Load configuration (mitiscan.yaml in cwd or ~/.config/mitiscan)
    ctx = MitiscanContext()
    ctx.config = load_config()

    path = Path(sys.argv[1] if len(sys.argv) > 1 else "/bin/ls")

    # 2. Look at what the loader and resolver see
    for artifact in load_path(path, ctx.config.loader):
        resolved = SymbolResolver().resolve(artifact)
        print(f"{artifact.binary_id}: {artifact.format.value} {artifact.architecture}")
        print(f"  {len(artifact.sections)} sections, {len(resolved.symbols.functions())} functions")

    # 3. Run every enabled rule
    engine = ctx.ensure_engine()
    reports = engine.analyze_paths([path])
    for report in reports:
        for result in report.results:
            print(f"  {result.rule_id} {result.rule_name:<45} {result.verdict.value}")

    # 4. Same exit status the CLI would use
    status = summarize_exit_status(reports)
    print(f"\nexit status: {status.name.lower()} ({int(status)})")


if __name__ == "__main__":
    main()

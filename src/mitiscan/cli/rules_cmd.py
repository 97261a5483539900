"""mitiscan rules - list registered mitigation rules."""

from __future__ import annotations

import typer


def rules_cmd(
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List every registered rule with its formats and effective severity."""
    from mitiscan.cli.app import get_context
    from mitiscan.utils.formatters import print_json, print_table

    registry = get_context().ensure_registry()
    config = get_context().ensure_config()

    rows = []
    for rule in registry:
        override = next(
            (rc for key, rc in config.rules.items() if registry.get(key) is rule), None
        )
        enabled = override is None or override.enabled is not False
        severity = (override.severity if override and override.severity else None) or (
            rule.default_severity.value
        )
        rows.append(
            {
                "id": rule.id,
                "name": rule.name,
                "mitigation": rule.mitigation,
                "formats": ",".join(sorted(f.value for f in rule.formats)),
                "severity": severity,
                "enabled": enabled,
            }
        )

    if as_json:
        print_json(rows)
    else:
        print_table(rows, title="Mitigation rules")

from __future__ import annotations

from ops_logrotate.models.rotation import CycleReport, FileOutcome


class ReportService:
    """Operator-facing text for one cycle: every skipped or failed file with its error kind."""

    def build_report(self, r: CycleReport | None) -> str:
        if r is None:
            return "[Cycle]\n- no data\n"
        counts = {a: r.count(a) for a in sorted({o.action for o in r.outcomes})}
        summary = ", ".join(f"{k}={v}" for k, v in counts.items()) or "(no files)"

        lines: list[str] = [
            f"[Cycle] {r.ts:%F %T}",
            f"- status: {r.status} (warnings={r.warning_count})",
            f"- policy snapshot: v{r.snapshot_version}",
            f"- files: {summary}",
        ]
        for o in r.outcomes:
            if o.action == "unchanged" and o.error_kind is None and not o.removed:
                continue
            lines.append(self._line(o))
        for n in r.notes:
            lines.append(f"- note: {n}")
        return "\n".join(lines) + "\n"

    def _line(self, o: FileOutcome) -> str:
        kind = f" [{o.error_kind}]" if o.error_kind else ""
        pruned = f" (pruned {len(o.removed)})" if o.removed else ""
        return f"  - {o.action:<9} {o.path}{kind}: {o.message}{pruned}"

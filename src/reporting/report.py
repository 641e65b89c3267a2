"""Change-set and apply report rendering."""

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from reconciler.apply import FAILED, SKIPPED, SUCCEEDED, ApplyReport
from reconciler.plan import CREATE, DELETE, NOOP, UPDATE, ChangeSet

ACTION_SYMBOLS = {CREATE: '+', UPDATE: '~', DELETE: '-', NOOP: ' '}
STATUS_SYMBOLS = {SUCCEEDED: '✓', FAILED: '✗', SKIPPED: '-'}


def format_changeset(changeset: ChangeSet, show_noop: bool = False) -> str:
    """Render a change-set as text, one line per entry."""
    lines = []
    for entry in changeset:
        if entry.action == NOOP and not show_noop:
            continue
        line = f"  {ACTION_SYMBOLS[entry.action]} {entry.action:<7} {entry.identifier}"
        if entry.action == UPDATE and entry.changed:
            line += f"  ({', '.join(entry.changed)})"
        if entry.depends_on:
            label = 'after' if entry.action != DELETE else 'after dependents'
            line += f"  [{label}: {', '.join(entry.depends_on)}]"
        lines.append(line)

    summary = changeset.summary()
    if changeset.is_empty:
        lines.append("No changes. Resources match the desired state.")
    else:
        lines.append(
            f"Plan: {summary[CREATE]} to create, {summary[UPDATE]} to update, "
            f"{summary[DELETE]} to delete."
        )
    return '\n'.join(lines)


def format_report(report: ApplyReport) -> str:
    """Render an apply report as text, one line per resource."""
    lines = []
    for o in report.outcomes.values():
        line = f"  {STATUS_SYMBOLS.get(o.status, '?')} {o.status:<9} {o.action:<7} {o.identifier}"
        if o.message and o.status != SUCCEEDED:
            line += f"  {o.message}"
        lines.append(line)
    summary = report.summary()
    verdict = 'complete' if report.success else 'incomplete'
    if report.cancelled:
        verdict = 'cancelled'
    lines.append(
        f"Apply {verdict}: {summary[SUCCEEDED]} succeeded, {summary[FAILED]} failed, "
        f"{summary[SKIPPED]} skipped."
    )
    return '\n'.join(lines)


@dataclass
class ReportWriter:
    """Writes apply reports as JSON and markdown files."""
    report_dir: Path
    name: str = ''

    def write(self, report: ApplyReport, verb: str = 'apply') -> list[Path]:
        """Write both report formats and return their paths."""
        self.report_dir.mkdir(parents=True, exist_ok=True)
        return [self._write_json(report, verb), self._write_markdown(report, verb)]

    def _write_json(self, report: ApplyReport, verb: str) -> Path:
        data = {'name': self.name, 'verb': verb}
        data.update(report.to_dict())
        filename = self._report_filename(report, verb, 'json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        return filename

    def _write_markdown(self, report: ApplyReport, verb: str) -> Path:
        status = 'SUCCEEDED' if report.success else 'FAILED'
        duration = report.duration or 0.0
        started = _timestamp(report.started_at)

        lines = [
            f"# {self.name or 'resources'} ({verb})",
            "",
            f"**Status**: {status}",
            f"**Date**: {started.strftime('%Y-%m-%d %H:%M:%S') if started else 'N/A'}",
            f"**Duration**: {duration:.1f}s",
            "",
            "## Resources",
            "",
            "| Resource | Action | Status | Attempts | Message |",
            "|----------|--------|--------|----------|---------|",
        ]

        for o in report.outcomes.values():
            status_emoji = {SUCCEEDED: '✅', FAILED: '❌', SKIPPED: '⏭️'}.get(o.status, '❓')
            lines.append(f"| {o.identifier} | {o.action} | {status_emoji} {o.status} | {o.attempts} | {o.message} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename(report, verb, 'md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, report: ApplyReport, verb: str, ext: str) -> Path:
        """Build the report filename: {timestamp}.{name}.{verb}.{status}.{ext}."""
        started = _timestamp(report.started_at)
        timestamp = started.strftime('%Y%m%d-%H%M%S') if started else 'unknown'
        status = 'passed' if report.success else 'failed'
        slug = self.name.replace('/', '-') if self.name else ''
        if slug:
            return self.report_dir / f"{timestamp}.{slug}.{verb}.{status}.{ext}"
        return self.report_dir / f"{timestamp}.{verb}.{status}.{ext}"


def _timestamp(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value) if value else None

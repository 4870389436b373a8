"""Issue collection reported by workers.

Reports are deduplicated by a short content hash so repeated sightings of
the same problem merge into one :class:`~autodev.core.models.Issue` with
an occurrence counter instead of flooding the report.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from typing import Any, Callable, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from autodev.core.context import ISSUE_ADDED, SchedulerContext
from autodev.core.models import SEVERITY_RANK, Issue

logger = logging.getLogger("autodev.issues")

_INTEGRATION_PREFIXES = ("INT-", "INTEGRATION", "FIX-WAVE")


class RawIssueReport(BaseModel):
    """Issue payload as emitted by a worker."""
    model_config = ConfigDict(populate_by_name=True)

    title: str
    severity: Literal["warning", "error", "blocker"]
    files: List[str] = Field(default_factory=list)
    signature: Optional[str] = None
    details: Optional[str] = None
    owner_task_id: Optional[str] = Field(default=None, alias="ownerTaskId")


def _normalize_files(files: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for f in files:
        trimmed = f.strip()
        if trimmed and trimmed not in seen:
            seen.append(trimmed)
    return seen


def _short_sha1(payload: Any) -> str:
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()[:12]


def compute_dedup_key(raw: RawIssueReport) -> str:
    if raw.signature:
        return _short_sha1(["sig", raw.signature.strip()])
    return _short_sha1(["titleFiles", raw.title.strip(), sorted(_normalize_files(raw.files))])


def _format_created(ts: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(ts))


class IssueTracker:
    def __init__(
        self,
        ctx: SchedulerContext,
        on_issue_reported: Optional[Callable[[Issue], None]] = None,
        on_issue_updated: Optional[Callable[[str, str], None]] = None,
        request_persist: Optional[Callable[[str], None]] = None,
        on_blocker_detected: Optional[Callable[[], None]] = None,
    ) -> None:
        self.ctx = ctx
        self.on_issue_reported = on_issue_reported
        self.on_issue_updated = on_issue_updated
        self.request_persist = request_persist
        self.on_blocker_detected = on_blocker_detected

    def add_issue(self, raw: RawIssueReport, reporter_task_id: str, reporter_worker_id: int) -> Issue:
        key = compute_dedup_key(raw)
        existing = self.ctx.issues.get(key)
        if existing is not None:
            return self._merge(existing, raw)
        return self._create(key, raw, reporter_task_id, reporter_worker_id)

    def _merge(self, existing: Issue, raw: RawIssueReport) -> Issue:
        existing.occurrences += 1
        prev_severity = existing.severity
        if SEVERITY_RANK[raw.severity] > SEVERITY_RANK[existing.severity]:
            existing.severity = raw.severity
        if existing.status == "fixed":
            existing.status = "open"
        if not existing.owner_task_id and raw.owner_task_id:
            existing.owner_task_id = raw.owner_task_id
        if not existing.signature and raw.signature:
            existing.signature = raw.signature
        if not existing.details and raw.details:
            existing.details = raw.details
        existing.files = _normalize_files([*existing.files, *raw.files])

        logger.info("Issue %s merged (occurrences=%d, severity=%s)", existing.issue_id, existing.occurrences, existing.severity)
        self._notify(existing, "issue_merged")
        if prev_severity != "blocker" and existing.severity == "blocker":
            self._signal_blocker()
        return existing

    def _create(self, key: str, raw: RawIssueReport, reporter_task_id: str, reporter_worker_id: int) -> Issue:
        issue = Issue(
            issue_id=key,
            title=raw.title.strip(),
            severity=raw.severity,
            reporter_task_id=reporter_task_id,
            reporter_worker_id=reporter_worker_id,
            owner_task_id=raw.owner_task_id or None,
            files=_normalize_files(raw.files),
            signature=(raw.signature or "").strip() or None,
            details=(raw.details or "").strip() or None,
            created_at=self.ctx.now(),
        )
        self.ctx.issues[key] = issue
        logger.info("Issue %s reported by %s: [%s] %s", key, reporter_task_id, issue.severity, issue.title)
        self._notify(issue, "issue_reported")
        if issue.severity == "blocker":
            self._signal_blocker()
        return issue

    def _notify(self, issue: Issue, reason: str) -> None:
        if self.on_issue_reported:
            self.on_issue_reported(issue)
        self.ctx.publish(ISSUE_ADDED, issue=issue)
        if self.request_persist:
            self.request_persist(reason)

    def _signal_blocker(self) -> None:
        if self.on_blocker_detected:
            self.on_blocker_detected()

    def update_status(self, issue_id: str, status: str) -> bool:
        issue = self.ctx.issues.get(issue_id)
        if issue is None:
            return False
        issue.status = status
        if self.on_issue_updated:
            self.on_issue_updated(issue_id, status)
        if self.request_persist:
            self.request_persist("issue_update")
        return True

    # ── Queries ──────────────────────────────────────────────

    def get_all(self) -> List[Issue]:
        """All issues, blockers first, then by creation time."""
        return sorted(
            self.ctx.issues.values(),
            key=lambda i: (-SEVERITY_RANK.get(i.severity, -1), i.created_at),
        )

    def get_open(self) -> List[Issue]:
        return [i for i in self.ctx.issues.values() if i.status == "open"]

    def get_open_blockers(self) -> List[Issue]:
        return [i for i in self.get_open() if i.severity == "blocker"]

    def clear(self) -> None:
        self.ctx.issues.clear()

    def restore(self, issues: Iterable[Issue]) -> None:
        self.ctx.issues.clear()
        for issue in issues:
            self.ctx.issues[issue.issue_id] = issue

    # ── Rendering ────────────────────────────────────────────

    @staticmethod
    def is_integration_task(task_id: str) -> bool:
        return task_id.upper().startswith(_INTEGRATION_PREFIXES)

    def format_for_injection(self, issues: List[Issue]) -> str:
        lines = [
            "---",
            "## 📋 Collected Issues Report (Auto-injected)",
            "",
            f"Total: {len(issues)} open issue(s) to address.",
            "",
        ]
        for heading, severity in (
            ("### 🚨 Blockers (Must Fix)", "blocker"),
            ("### ❌ Errors", "error"),
            ("### ⚠️ Warnings", "warning"),
        ):
            group = [i for i in issues if i.severity == severity]
            if not group:
                continue
            lines.append(heading)
            lines.extend(self._format_single(i) for i in group)
            lines.append("")
        lines.append("---")
        return "\n".join(lines)

    @staticmethod
    def _format_single(issue: Issue) -> str:
        files = f" ({', '.join(issue.files)})" if issue.files else ""
        owner = f" [Owner: {issue.owner_task_id}]" if issue.owner_task_id else ""
        details = f"\n  Details: {issue.details}" if issue.details else ""
        return f"- **{issue.title}**{files}{owner}{details}"

    def format_full_report(self, issues: Optional[List[Issue]] = None) -> str:
        if issues is None:
            issues = self.get_all()
        lines = [
            "# Auto-Dev Issues Report",
            "",
            f"Generated: {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(self.ctx.now()))}",
            "",
            "---",
            "",
            "## Summary",
            "",
            f"- **Total Issues**: {len(issues)}",
            f"- **Open**: {sum(1 for i in issues if i.status == 'open')}",
            f"- **Fixed**: {sum(1 for i in issues if i.status == 'fixed')}",
            f"- **Ignored**: {sum(1 for i in issues if i.status == 'ignored')}",
            "",
        ]
        sections = [
            ("## 🚨 Blockers (Must Fix)", [i for i in issues if i.severity == "blocker" and i.status == "open"]),
            ("## ❌ Errors", [i for i in issues if i.severity == "error" and i.status == "open"]),
            ("## ⚠️ Warnings", [i for i in issues if i.severity == "warning" and i.status == "open"]),
            ("## ✅ Resolved", [i for i in issues if i.status != "open"]),
        ]
        for heading, group in sections:
            if not group:
                continue
            lines.extend([heading, ""])
            lines.extend(self._format_detailed(i) for i in group)
            lines.append("")
        return "\n".join(lines)

    @staticmethod
    def _format_detailed(issue: Issue) -> str:
        lines = [
            f"### {issue.title}",
            "",
            f"- **ID**: `{issue.issue_id}`",
            f"- **Severity**: {issue.severity}",
            f"- **Status**: {issue.status}",
            f"- **Reported by**: {issue.reporter_task_id} (worker {issue.reporter_worker_id})",
            f"- **Created**: {_format_created(issue.created_at)}",
            f"- **Occurrences**: {issue.occurrences}",
        ]
        if issue.owner_task_id:
            lines.append(f"- **Owner Task**: {issue.owner_task_id}")
        if issue.files:
            lines.append(f"- **Files**: {', '.join(issue.files)}")
        if issue.signature:
            lines.append(f"- **Signature**: `{issue.signature}`")
        if issue.details:
            lines.extend(["", "**Details**:", "", "```", issue.details, "```"])
        lines.append("")
        return "\n".join(lines)

    def write_to_file(self, path: str) -> str:
        content = self.format_full_report()
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(content)
        logger.info("Wrote issues report (%d issues) to %s", len(self.ctx.issues), path)
        return path

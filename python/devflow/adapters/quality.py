"""Lint-command based code quality analysis."""

import logging
import re
from typing import List, Optional

from devflow.adapters.shell import ShellCommandExecutor
from devflow.interfaces.collaborators import QualityIssue, QualityReport

logger = logging.getLogger(__name__)

# path:line[:col]: CODE message   (flake8 / ruff / pylint --output-format=parseable)
_ISSUE = re.compile(r"^(?P<file>[^:\s]+):(?P<line>\d+)(?::\d+)?:\s*(?P<rule>[A-Z]+\d+)?\s*(?P<message>.+)$")


def score_for(issue_count: int) -> int:
    return max(0, 100 - 2 * issue_count)


def parse_lint_output(output: str) -> List[QualityIssue]:
    issues = []
    for line in output.splitlines():
        match = _ISSUE.match(line.strip())
        if not match:
            continue
        rule = match.group("rule") or ""
        issues.append(
            QualityIssue(
                file=match.group("file"),
                line=int(match.group("line")),
                severity="error" if rule.startswith(("E", "F")) else "warning",
                message=match.group("message").strip(),
                rule=rule,
            )
        )
    return issues


class CommandQualityAnalyzer:
    def __init__(
        self,
        executor: ShellCommandExecutor,
        lint_command: Optional[str] = None,
        format_command: Optional[str] = None,
    ):
        self.executor = executor
        self.lint_command = lint_command
        self.format_command = format_command

    async def analyze_code(self, repo_root: str) -> QualityReport:
        if not self.lint_command:
            return QualityReport(score=100)

        result = await self.executor.run(self.lint_command, repo_root)
        issues = parse_lint_output(result.stdout)
        suggestions = []
        if issues:
            rules = sorted({i.rule for i in issues if i.rule})
            suggestions.append(f"Fix {len(issues)} lint issue(s)" + (f" ({', '.join(rules[:10])})" if rules else ""))
        elif result.exit_code != 0:
            logger.warning("Lint command exited %d without parseable issues", result.exit_code)
        return QualityReport(score=score_for(len(issues)), issues=issues, suggestions=suggestions)

    async def format_code(self, repo_root: str) -> None:
        if not self.format_command:
            return
        result = await self.executor.run(self.format_command, repo_root)
        if result.exit_code != 0:
            raise RuntimeError(f"Format command failed: {result.stderr.strip()}")

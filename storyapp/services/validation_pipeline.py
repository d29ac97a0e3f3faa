"""
storyapp/services/validation_pipeline.py -- Draft validation for generated output.

Runs every check a generated draft must pass before it can be accepted:

    Layer 1: JSON Schema validation (structural; failure is fatal)
    Layer 2: Continuity checks the model flagged as ``warn``
    Layer 3: Safety policy scan (hard-forbidden topics + rating tier)

Layers 2 and 3 only run on structurally valid drafts.  Their findings are
content issues, which the retry manager may try to repair; a schema
failure never is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto

from storyengine.safety_policy import SafetyPolicy
from storyengine.schema_validator import load_schema, validate

logger = logging.getLogger(__name__)


class IssueSource(Enum):
    SCHEMA = auto()
    CONTINUITY = auto()
    SAFETY = auto()


@dataclass
class ValidationIssue:
    """A single validation issue."""
    source: IssueSource
    message: str
    field: str = ""  # JSON path for schema issues


@dataclass
class ValidationResult:
    """Structured result of validating one draft."""
    passed: bool
    schema_valid: bool = True
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def schema_errors(self) -> list[str]:
        return [
            f"{i.field} {i.message}" if i.field else i.message
            for i in self.issues if i.source == IssueSource.SCHEMA
        ]

    @property
    def content_issues(self) -> list[str]:
        """Continuity and safety findings, in the order they were found."""
        return [i.message for i in self.issues if i.source != IssueSource.SCHEMA]

    def format_for_retry(self) -> str:
        """Format issues as feedback for a repair prompt or a log line."""
        lines = ["ISSUES (please fix these):"]
        for issue in self.issues:
            prefix = f"[{issue.source.name.lower()}] "
            lines.append(f"  - {prefix}{issue.message}")
        return "\n".join(lines)


def continuity_warnings(output: dict) -> list[str]:
    """Notes of every continuity check the model marked ``warn``."""
    warnings: list[str] = []
    for check in output.get("continuity_checks") or []:
        if isinstance(check, dict) and check.get("result") == "warn":
            warnings.append(check.get("note") or f"Continuity warning: {check.get('rule', '')}")
    return warnings


class ValidationPipeline:
    """Validates drafts for one output schema under one safety policy.

    Parameters
    ----------
    schema_name : str
        Name of a bundled schema (see ``storyengine.schema_validator``).
    safety_policy : SafetyPolicy | None
        Policy for the safety layer; ``None`` skips it.
    check_continuity : bool
        Whether ``warn`` continuity checks count as issues.
    """

    def __init__(
        self,
        schema_name: str,
        safety_policy: SafetyPolicy | None = None,
        check_continuity: bool = True,
    ):
        self._schema_name = schema_name
        self._schema = load_schema(schema_name)
        self._safety = safety_policy
        self._check_continuity = check_continuity

    @property
    def schema(self) -> dict:
        return self._schema

    def validate(self, output) -> ValidationResult:
        report = validate(self._schema, output)
        if not report.valid:
            logger.warning(
                "Draft failed %s schema validation with %d error(s)",
                self._schema_name, len(report.errors),
            )
            return ValidationResult(
                passed=False,
                schema_valid=False,
                issues=[
                    ValidationIssue(IssueSource.SCHEMA, err.message, field=err.path)
                    for err in report.errors
                ],
            )

        issues: list[ValidationIssue] = []
        if self._check_continuity:
            issues.extend(
                ValidationIssue(IssueSource.CONTINUITY, note)
                for note in continuity_warnings(output)
            )
        if self._safety is not None:
            issues.extend(
                ValidationIssue(IssueSource.SAFETY, violation)
                for violation in self._safety.scan_output(output)
            )
        return ValidationResult(passed=not issues, issues=issues)

"""
Build-log text analysis.

Extracts named steps, ISO timestamps, ERROR/WARNING lines and a derived
success flag from raw CI job logs.
"""

import re
from dataclasses import dataclass, field

from pipewatch.timeutil import elapsed_ms, parse_timestamp

BUILD_KEYWORDS = ("build", "hugo", "compile", "generate")
DEPLOY_KEYWORDS = ("deploy", "publish", "upload", "pages")

_TIMESTAMP_RE = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?")
_STEP_PATTERNS = (
    re.compile(r"Step\s+(\d+)/(\d+)\s*:\s*(.+)"),
    re.compile(r"\bRunning\s+(.+)"),
    re.compile(r"\bStarting\s+(.+)"),
    re.compile(r"\bExecuting\s+(.+)"),
)
_ERROR_RE = re.compile(r"\berror\b", re.IGNORECASE)
_WARNING_RE = re.compile(r"\bwarn(?:ing)?\b", re.IGNORECASE)
_FAILED_RE = re.compile(r"\bfailed\b", re.IGNORECASE)

_PHASES = {
    "setup": ("setup", "install", "checkout"),
    "build": ("build", "hugo", "generate"),
    "deploy": ("deploy", "upload", "publish"),
}


def classify_job(name: str) -> str:
    """Bucket a CI job by name; build wins when a name matches both."""
    lowered = name.lower()
    if any(k in lowered for k in BUILD_KEYWORDS):
        return "build"
    if any(k in lowered for k in DEPLOY_KEYWORDS):
        return "deploy"
    return "other"


@dataclass
class BuildLogAnalysis:
    steps: list[str] = field(default_factory=list)
    timestamps: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    phase_times_ms: dict[str, int] = field(default_factory=dict)
    success: bool = True

    def to_dict(self) -> dict:
        return {
            "steps": self.steps,
            "timestamps": self.timestamps,
            "errors": self.errors[:50],
            "warnings": self.warnings[:50],
            "phase_times_ms": self.phase_times_ms,
            "success": self.success,
        }


def analyze_build_log(text: str) -> BuildLogAnalysis:
    analysis = BuildLogAnalysis()
    failed_keyword = False
    phase_marks: list[tuple[str, str]] = []

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue

        ts_match = _TIMESTAMP_RE.search(line)
        if ts_match:
            analysis.timestamps.append(ts_match.group(0))

        if _ERROR_RE.search(line):
            analysis.errors.append(line)
        elif _WARNING_RE.search(line):
            analysis.warnings.append(line)
        if _FAILED_RE.search(line):
            failed_keyword = True

        for pattern in _STEP_PATTERNS:
            step = pattern.search(line)
            if step:
                analysis.steps.append(step.group(step.lastindex).strip())
                break

        if ts_match:
            lowered = line.lower()
            for phase, keywords in _PHASES.items():
                if any(k in lowered for k in keywords):
                    phase_marks.append((phase, ts_match.group(0)))
                    break

    analysis.phase_times_ms = _phase_times(phase_marks)
    analysis.success = not analysis.errors and not failed_keyword
    return analysis


def _phase_times(marks: list[tuple[str, str]]) -> dict[str, int]:
    """Span from the first to the last timestamped line mentioning each phase."""
    spans: dict[str, list] = {}
    for phase, ts in marks:
        parsed = parse_timestamp(ts)
        if parsed is None:
            continue
        span = spans.setdefault(phase, [parsed, parsed])
        span[0] = min(span[0], parsed)
        span[1] = max(span[1], parsed)
    return {phase: elapsed_ms(start, end) for phase, (start, end) in spans.items()}

"""
Plan Marker Parser - Extrahiert Steuer-Marker und Task-Listen aus Agent-Text.

Zustandslos. Der Driver ruft die Funktionen auf dem akkumulierten Stream-Text auf.

Key Features:
- Planungs-Marker je nach Modus ([PLAN_GENERATED] / [SPEC_GENERATED])
- Task-Liste aus dem ```tasks Block (mit ## Phase N Gruppierung)
- Task-/Phasen-Marker für Progress-Events
- Verifikations-Marker für den Verification-Pass
"""

import re
from dataclasses import dataclass
from enum import Enum

from .models import ParsedTask, PlanningMode


class MarkerKind(Enum):
    """Art eines Markers."""
    NONE = "none"
    PLAN_GENERATED = "plan_generated"
    SPEC_GENERATED = "spec_generated"
    TASK_START = "task_start"
    TASK_COMPLETE = "task_complete"
    PHASE_COMPLETE = "phase_complete"
    VERIFICATION_PASSED = "verification_passed"
    VERIFICATION_FAILED = "verification_failed"


@dataclass(frozen=True)
class Marker:
    """Gefundener Marker. start/end sind Positionen im untersuchten Text."""
    kind: MarkerKind
    start: int = -1
    end: int = -1
    task_id: str | None = None
    phase_number: int | None = None
    summary: str | None = None

    @property
    def found(self) -> bool:
        return self.kind is not MarkerKind.NONE


NO_MARKER = Marker(MarkerKind.NONE)

PLAN_GENERATED = "[PLAN_GENERATED]"
SPEC_GENERATED = "[SPEC_GENERATED]"

TASKS_BLOCK_RE = re.compile(r"```tasks\s*([\s\S]*?)```")
TASK_LINE_RE = re.compile(r"^- \[ \] (T\d{3}):\s*([^|]+?)\s*(?:\|\s*File:\s*(.+?))?\s*$")
LOOSE_TASK_LINE_RE = re.compile(r"^- \[ \] T\d{3}:.*$", re.MULTILINE)
PHASE_HEADER_RE = re.compile(r"^##\s*(.+?)\s*$")
PHASE_NUMBER_RE = re.compile(r"Phase\s*(\d+)", re.IGNORECASE)

# Beide Schreibweisen: "[TASK_START] T001: ..." und "[TASK_START:T001]"
TASK_MARKER_RE = re.compile(
    r"\[(TASK_START|TASK_COMPLETE)(?::\s*(T\d{3})\]|\]\s*(T\d{3})\b)(?::[ \t]*([^\n]*))?"
)
PHASE_COMPLETE_RE = re.compile(
    r"\[PHASE_COMPLETE(?::\s*(\d+)\]|\]\s*Phase\s*(\d+))", re.IGNORECASE
)
VERIFICATION_RE = re.compile(r"\[VERIFICATION_(PASSED|FAILED)\]")


def expected_planning_marker(mode: PlanningMode, require_approval: bool) -> str | None:
    """Marker, mit dem die Planungsphase im gegebenen Modus endet."""
    if mode == PlanningMode.SKIP:
        return None
    if mode == PlanningMode.LITE and not require_approval:
        return PLAN_GENERATED
    return SPEC_GENERATED


def extract_planning_marker(
    text: str,
    mode: PlanningMode,
    require_approval: bool = False,
) -> Marker:
    """
    Sucht den Planungs-Marker des Modus im Text.

    Lite ohne Approval sucht [PLAN_GENERATED], Lite mit Approval sowie
    Spec/Full suchen [SPEC_GENERATED]. Skip hat keinen Marker.
    """
    expected = expected_planning_marker(mode, require_approval)
    if expected is None:
        return NO_MARKER

    index = text.find(expected)
    if index < 0:
        return NO_MARKER

    kind = MarkerKind.PLAN_GENERATED if expected == PLAN_GENERATED else MarkerKind.SPEC_GENERATED
    return Marker(kind, start=index, end=index + len(expected))


def plan_content_before(text: str, marker: Marker) -> str:
    """Plan-Inhalt = alles vor dem Marker."""
    if not marker.found:
        return text.strip()
    return text[: marker.start].strip()


def parse_task_list(spec_text: str) -> list[ParsedTask]:
    """
    Parst Tasks aus einem Plan.

    Bevorzugt den ```tasks Block. Fehlt er, werden lose Checklist-Zeilen
    (- [ ] T001: ...) aus dem ganzen Text genommen. Nichts gefunden = leere Liste.
    """
    block = TASKS_BLOCK_RE.search(spec_text)
    if block:
        content = block.group(1)
    else:
        loose = LOOSE_TASK_LINE_RE.findall(spec_text)
        if not loose:
            return []
        content = "\n".join(loose)

    tasks: list[ParsedTask] = []
    current_phase: str | None = None
    current_phase_number: int | None = None

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        header = PHASE_HEADER_RE.match(line)
        if header:
            current_phase = header.group(1)
            number = PHASE_NUMBER_RE.search(current_phase)
            current_phase_number = int(number.group(1)) if number else None
            continue

        match = TASK_LINE_RE.match(line)
        if not match:
            continue

        task_id, description, file_path = match.groups()
        tasks.append(ParsedTask(
            task_id=task_id,
            description=description.strip(),
            file_path=file_path.strip() if file_path else None,
            phase=current_phase,
            phase_number=current_phase_number,
        ))

    return tasks


def extract_task_markers(text: str, start: int = 0) -> list[Marker]:
    """
    Task- und Phasen-Marker ab Position start, in Text-Reihenfolge.

    Nur vollständige Marker werden gefunden. Ein Aufrufer, der gestreamten
    Text inkrementell scannt, setzt start auf das end des letzten Markers.
    """
    markers: list[Marker] = []

    for match in TASK_MARKER_RE.finditer(text, start):
        kind = MarkerKind.TASK_START if match.group(1) == "TASK_START" else MarkerKind.TASK_COMPLETE
        summary = match.group(4)
        markers.append(Marker(
            kind,
            start=match.start(),
            end=match.end(),
            task_id=match.group(2) or match.group(3),
            summary=summary.strip() if summary else None,
        ))

    for match in PHASE_COMPLETE_RE.finditer(text, start):
        number = match.group(1) or match.group(2)
        markers.append(Marker(
            MarkerKind.PHASE_COMPLETE,
            start=match.start(),
            end=match.end(),
            phase_number=int(number),
        ))

    markers.sort(key=lambda m: m.start)
    return markers


def extract_verification_marker(text: str) -> Marker:
    """Letzter Verifikations-Marker im Text gewinnt."""
    result = NO_MARKER
    for match in VERIFICATION_RE.finditer(text):
        kind = (
            MarkerKind.VERIFICATION_PASSED
            if match.group(1) == "PASSED"
            else MarkerKind.VERIFICATION_FAILED
        )
        result = Marker(kind, start=match.start(), end=match.end())
    return result

"""Conflict detection and resolution between linked issues.

Everything here is pure: no I/O, no clocks. Snapshots carry the vocabulary of
the system they came from:

- System A: ``title``, ``description``, ``state`` ("open"/"closed"), ``labels``, ``assignees``
- System B: ``summary``, ``description``, ``status`` (workflow status name), ``labels``, ``assignees``

`FieldMappings` translates labels and open-state/status between the two.
"""

import enum
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

SYSTEM_A = "a"
SYSTEM_B = "b"

OPEN = "open"
CLOSED = "closed"

DEFAULT_STATUS_MAPPING = {OPEN: "To Do", CLOSED: "Done"}

# Field names reported in ConflictReport.conflicting_fields
FIELD_TITLE = "title"
FIELD_DESCRIPTION = "description"
FIELD_STATUS = "status"
FIELD_LABELS = "labels"
FIELD_ASSIGNEES = "assignees"
COMPARED_FIELDS = (FIELD_TITLE, FIELD_DESCRIPTION, FIELD_STATUS, FIELD_LABELS, FIELD_ASSIGNEES)

# Conflict field -> key in each system's vocabulary
_A_KEYS = {
    FIELD_TITLE: "title",
    FIELD_DESCRIPTION: "description",
    FIELD_STATUS: "state",
    FIELD_LABELS: "labels",
    FIELD_ASSIGNEES: "assignees",
}
_B_KEYS = {
    FIELD_TITLE: "summary",
    FIELD_DESCRIPTION: "description",
    FIELD_STATUS: "status",
    FIELD_LABELS: "labels",
    FIELD_ASSIGNEES: "assignees",
}


class Strategy(str, enum.Enum):
    A_WINS = "a-wins"
    B_WINS = "b-wins"
    MANUAL = "manual"
    LAST_WRITE_WINS = "last-write-wins"


class Resolution(str, enum.Enum):
    A_WINS = "a-wins"
    B_WINS = "b-wins"
    MANUAL = "manual"
    MERGED = "merged"


@dataclass(frozen=True)
class Snapshot:
    """Current state of one issue, in its own system's vocabulary.

    `status` holds the open-state ("open"/"closed") for System A and the
    workflow status name for System B.
    """

    system: str
    ref: str
    title: str = ""
    description: str = ""
    status: str = OPEN
    labels: Tuple[str, ...] = ()
    assignees: Tuple[str, ...] = ()
    updated_at: Optional[str] = None

    @classmethod
    def from_payload(cls, system: str, data: Mapping[str, Any]) -> "Snapshot":
        """Build from a normalized event payload or API response dict."""
        if system == SYSTEM_A:
            title = data.get("title")
            status = data.get("state")
        else:
            title = data.get("summary", data.get("title"))
            status = data.get("status")
        return cls(
            system=system,
            ref=str(data.get("id", data.get("ref", ""))),
            title=title or "",
            description=data.get("description") or data.get("body") or "",
            status=status or (OPEN if system == SYSTEM_A else DEFAULT_STATUS_MAPPING[OPEN]),
            labels=tuple(data.get("labels") or ()),
            assignees=tuple(data.get("assignees") or ()),
            updated_at=data.get("updated_at"),
        )

    def to_fields(self) -> Dict[str, Any]:
        """Field dict in this snapshot's own vocabulary."""
        keys = _A_KEYS if self.system == SYSTEM_A else _B_KEYS
        return {
            keys[FIELD_TITLE]: self.title,
            keys[FIELD_DESCRIPTION]: self.description,
            keys[FIELD_STATUS]: self.status,
            keys[FIELD_LABELS]: list(self.labels),
            keys[FIELD_ASSIGNEES]: list(self.assignees),
        }

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["labels"] = list(self.labels)
        data["assignees"] = list(self.assignees)
        return data


@dataclass(frozen=True)
class FieldMappings:
    """Operator-configurable translation tables.

    `label_mapping`: A label -> B label (unmapped labels pass through).
    `status_mapping`: A open-state -> B status name.
    """

    label_mapping: Mapping[str, str] = field(default_factory=dict)
    status_mapping: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_STATUS_MAPPING))

    def label_to_b(self, label: str) -> str:
        return self.label_mapping.get(label, label)

    def label_to_a(self, label: str) -> str:
        for a_label, b_label in self.label_mapping.items():
            if b_label == label:
                return a_label
        return label

    def status_to_b(self, open_state: str) -> str:
        return self.status_mapping.get(open_state, self.status_mapping.get(OPEN, DEFAULT_STATUS_MAPPING[OPEN]))

    def status_to_a(self, status: str) -> str:
        """B status -> A open-state. Statuses missing from the table count as open."""
        for open_state, b_status in self.status_mapping.items():
            if b_status.casefold() == (status or "").casefold():
                return open_state
        return OPEN

    def translate(self, snapshot: Snapshot) -> Dict[str, Any]:
        """Field dict for the *other* system, built from `snapshot`."""
        if snapshot.system == SYSTEM_A:
            return {
                "summary": snapshot.title,
                "description": snapshot.description or "",
                "status": self.status_to_b(snapshot.status),
                "labels": [self.label_to_b(label) for label in snapshot.labels],
                "assignees": list(snapshot.assignees),
            }
        return {
            "title": snapshot.title,
            "description": snapshot.description or "",
            "state": self.status_to_a(snapshot.status),
            "labels": [self.label_to_a(label) for label in snapshot.labels],
            "assignees": list(snapshot.assignees),
        }


@dataclass(frozen=True)
class ConflictReport:
    snapshot_a: Snapshot
    snapshot_b: Snapshot
    updated_at_a: Optional[str]
    updated_at_b: Optional[str]
    conflicting_fields: frozenset

    def as_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_a": self.snapshot_a.as_dict(),
            "snapshot_b": self.snapshot_b.as_dict(),
            "updated_at_a": self.updated_at_a,
            "updated_at_b": self.updated_at_b,
            "conflicting_fields": sorted(self.conflicting_fields),
        }


@dataclass(frozen=True)
class ConflictResolution:
    resolved: bool
    resolution: Resolution
    winning_data: Optional[Dict[str, Any]] = None
    requires_manual_review: bool = False
    winner: Optional[str] = None  # SYSTEM_A / SYSTEM_B for automatic resolutions


_TZ_BASIC_RE = re.compile(r"([+-]\d{2})(\d{2})$")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO-8601 (incl. 'Z' and '+0000' offsets) into an aware UTC datetime."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _TZ_BASIC_RE.sub(r"\1:\2", text)
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _canonical(snapshot: Snapshot, mappings: FieldMappings) -> Dict[str, Any]:
    """Comparable form: open-state and labels in System A vocabulary, assignees casefolded."""
    if snapshot.system == SYSTEM_A:
        open_state = snapshot.status if snapshot.status in (OPEN, CLOSED) else OPEN
        labels = set(snapshot.labels)
    else:
        open_state = mappings.status_to_a(snapshot.status)
        labels = {mappings.label_to_a(label) for label in snapshot.labels}
    return {
        FIELD_TITLE: snapshot.title or "",
        FIELD_DESCRIPTION: snapshot.description or "",
        FIELD_STATUS: open_state,
        FIELD_LABELS: labels,
        # Heuristic: the systems share no user identity, so logins/display names
        # are matched case-insensitively.
        FIELD_ASSIGNEES: {a.casefold() for a in snapshot.assignees},
    }


def detect_conflicts(
    snapshot_a: Snapshot, snapshot_b: Snapshot, mappings: Optional[FieldMappings] = None
) -> Optional[ConflictReport]:
    """Field-level diff of two linked snapshots; None when they agree."""
    mappings = mappings or FieldMappings()
    left = _canonical(snapshot_a, mappings)
    right = _canonical(snapshot_b, mappings)
    fields = frozenset(name for name in COMPARED_FIELDS if left[name] != right[name])
    if not fields:
        return None
    return ConflictReport(
        snapshot_a=snapshot_a,
        snapshot_b=snapshot_b,
        updated_at_a=snapshot_a.updated_at,
        updated_at_b=snapshot_b.updated_at,
        conflicting_fields=fields,
    )


def _wins(report: ConflictReport, side: str, mappings: FieldMappings) -> ConflictResolution:
    winner = report.snapshot_a if side == SYSTEM_A else report.snapshot_b
    return ConflictResolution(
        resolved=True,
        resolution=Resolution.A_WINS if side == SYSTEM_A else Resolution.B_WINS,
        winning_data=mappings.translate(winner),
        winner=winner.system,
    )


def resolve(
    report: ConflictReport,
    strategy: Strategy,
    mappings: Optional[FieldMappings] = None,
    tie_breaker: Strategy = Strategy.A_WINS,
) -> ConflictResolution:
    """Apply a resolution strategy to a report.

    A-wins / B-wins translate the winning snapshot into the other system's
    vocabulary. Last-write-wins compares the two update instants; an exact tie
    goes to `tie_breaker` (A by default, an arbitrary but fixed choice). Manual
    never resolves automatically.
    """
    mappings = mappings or FieldMappings()
    strategy = Strategy(strategy)

    if strategy == Strategy.A_WINS:
        return _wins(report, SYSTEM_A, mappings)
    if strategy == Strategy.B_WINS:
        return _wins(report, SYSTEM_B, mappings)
    if strategy == Strategy.MANUAL:
        return ConflictResolution(
            resolved=False, resolution=Resolution.MANUAL, requires_manual_review=True
        )
    if strategy == Strategy.LAST_WRITE_WINS:
        time_a = parse_timestamp(report.updated_at_a) or _EPOCH
        time_b = parse_timestamp(report.updated_at_b) or _EPOCH
        if time_a > time_b:
            return _wins(report, SYSTEM_A, mappings)
        if time_b > time_a:
            return _wins(report, SYSTEM_B, mappings)
        return _wins(report, SYSTEM_B if Strategy(tie_breaker) == Strategy.B_WINS else SYSTEM_A, mappings)
    raise ValueError(f"Unknown conflict strategy: {strategy}")


def fields_for(system: str, conflict_fields: Iterable[str]) -> Tuple[str, ...]:
    """Keys in `system`'s vocabulary for the given conflict field names."""
    keys = _A_KEYS if system == SYSTEM_A else _B_KEYS
    return tuple(keys[name] for name in COMPARED_FIELDS if name in set(conflict_fields))

"""Vehicle inspection checklist used before and after a trip."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from ...errors import UnknownInspectionItem
from ...models.domain import InspectionKind


class InspectionSection(str, Enum):
    EXTERIOR = "exterior"
    INTERIOR = "interior"
    MECHANICAL = "mechanical"
    SAFETY = "safety"


@dataclass(slots=True)
class InspectionItem:
    id: str
    section: InspectionSection
    title: str
    description: str
    checked: bool = False
    has_issue: bool = False
    notes: str = ""

    @property
    def is_satisfied(self) -> bool:
        return self.checked and (not self.has_issue or bool(self.notes.strip()))


# (id, section, title, description) in checklist order.
CANONICAL_ITEMS: tuple[tuple[str, InspectionSection, str, str], ...] = (
    ("lights", InspectionSection.EXTERIOR, "Lights", "Check all exterior lights"),
    ("tires", InspectionSection.EXTERIOR, "Tires", "Check tire pressure and wear"),
    ("body_damage", InspectionSection.EXTERIOR, "Body Damage", "Inspect for any damage"),
    ("dashboard", InspectionSection.INTERIOR, "Dashboard", "Check all gauges and warning lights"),
    ("seats_belts", InspectionSection.INTERIOR, "Seats & Belts", "Inspect seats and seatbelts"),
    ("controls", InspectionSection.INTERIOR, "Controls", "Test all controls and switches"),
    ("engine", InspectionSection.MECHANICAL, "Engine", "Check engine operation"),
    ("brakes", InspectionSection.MECHANICAL, "Brakes", "Test brake system"),
    ("fluid_levels", InspectionSection.MECHANICAL, "Fluid Levels", "Check all fluid levels"),
    ("emergency_kit", InspectionSection.SAFETY, "Emergency Kit", "Verify emergency equipment"),
    ("fire_extinguisher", InspectionSection.SAFETY, "Fire Extinguisher", "Check expiration and pressure"),
    ("first_aid_kit", InspectionSection.SAFETY, "First Aid Kit", "Verify contents and expiration"),
)


class InspectionChecklist:
    """In-memory state of one inspection attempt.

    A checklist belongs to exactly one kind (pre-trip or post-trip) and is
    discarded once submitted; start a new one for every attempt.
    """

    def __init__(self, kind: InspectionKind) -> None:
        self.kind = kind
        self._items: dict[str, InspectionItem] = {
            item_id: InspectionItem(item_id, section, title, description)
            for item_id, section, title, description in CANONICAL_ITEMS
        }
        self.submitted = False

    @property
    def items(self) -> tuple[InspectionItem, ...]:
        return tuple(self._items.values())

    def item(self, item_id: str) -> InspectionItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise UnknownInspectionItem(f"No inspection item '{item_id}'.") from None

    def section(self, section: InspectionSection) -> list[InspectionItem]:
        return [item for item in self._items.values() if item.section == section]

    def toggle_checked(self, item_id: str) -> InspectionItem:
        item = self.item(item_id)
        item.checked = not item.checked
        return item

    def toggle_issue(self, item_id: str) -> InspectionItem:
        item = self.item(item_id)
        item.has_issue = not item.has_issue
        return item

    def set_notes(self, item_id: str, text: str) -> InspectionItem:
        item = self.item(item_id)
        item.notes = text
        return item

    def is_complete(self) -> bool:
        return all(item.is_satisfied for item in self._items.values())

    def has_any_issue(self) -> bool:
        return any(item.has_issue for item in self._items.values())

    def issues_summary(self) -> list[tuple[str, str]]:
        return [(item.title, item.notes) for item in self._items.values() if item.has_issue]

    def missing_items(self) -> list[str]:
        """Titles of items that still block completion."""
        return [item.title for item in self._items.values() if not item.is_satisfied]

    @classmethod
    def from_item_states(cls, kind: InspectionKind, states: Iterable[Mapping[str, Any]]) -> "InspectionChecklist":
        """Build a checklist from submitted item states (``id``, ``checked``, ``has_issue``, ``notes``)."""
        checklist = cls(kind)
        for state in states:
            item = checklist.item(state["id"])
            item.checked = bool(state.get("checked", False))
            item.has_issue = bool(state.get("has_issue", False))
            item.notes = state.get("notes") or ""
        return checklist

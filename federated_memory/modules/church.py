"""
Church module: people, households, attendance, ministry roles and registries.

Every entity is stored as a memory whose metadata carries the structured
fields, so it can be found by metadata filters and by semantic search.
"""

import dataclasses
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ..core.schema import MemoryRecord
from .base import BaseModule

DEFAULT_MEMBERSHIP_STATUS = "guest"
DEFAULT_ATTENDANCE_STATUS = "present"


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def calculate_age(birthdate: date, today: date) -> int:
    age = today.year - birthdate.year
    if (today.month, today.day) < (birthdate.month, birthdate.day):
        age -= 1
    return age


class ChurchModule(BaseModule):
    """Manages people, households, ministries and related church data."""

    default_type = "note"

    def __init__(self, db_path, embeddings, cmi=None, cache_backend=None, **kwargs):
        super().__init__("church", db_path, embeddings, cmi=cmi, cache_backend=cache_backend, **kwargs)

    def _today(self) -> date:
        return self._clock().date()

    # ============= Metadata enrichment =============

    def process_metadata(self, content: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        enriched = self._copy_metadata(metadata)

        entity_type = enriched.get("type")
        if entity_type == "person":
            return self._process_person(enriched)
        if entity_type == "household":
            return self._process_household(enriched)
        if entity_type == "attendance":
            return self._process_attendance(enriched)
        if entity_type in ("ministry_role", "group_membership"):
            return self._process_relationship(enriched)
        if entity_type == "registry":
            return self._process_registry(enriched)
        return enriched

    def _process_person(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        if not metadata.get("membershipStatus"):
            metadata["membershipStatus"] = DEFAULT_MEMBERSHIP_STATUS

        metadata["tags"] = metadata.get("tags") or []
        if not metadata.get("contact"):
            metadata["contact"] = {"emails": [], "phones": []}

        metadata["fullName"] = f"{metadata.get('firstName') or ''} {metadata.get('lastName') or ''}".strip()

        birthdate = _parse_date(metadata.get("birthdate"))
        if birthdate is not None:
            metadata["birthdate"] = birthdate.isoformat()
            metadata["age"] = calculate_age(birthdate, self._today())

        return metadata

    def _process_household(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        metadata["members"] = metadata.get("members") or []
        metadata["memberCount"] = len(metadata["members"])
        return metadata

    def _process_attendance(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        value = metadata.get("date")
        if isinstance(value, (date, datetime)):
            metadata["date"] = value.isoformat()
        elif isinstance(value, str) and value:
            try:
                metadata["date"] = datetime.fromisoformat(value.replace("Z", "+00:00")).isoformat()
            except ValueError:
                pass

        if not metadata.get("status"):
            metadata["status"] = DEFAULT_ATTENDANCE_STATUS
        return metadata

    def _process_relationship(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        if not metadata.get("isActive") and metadata.get("startDate"):
            today = self._today()
            start = _parse_date(metadata["startDate"])
            end = _parse_date(metadata.get("endDate"))
            if start is not None:
                metadata["isActive"] = start <= today and (end is None or end > today)
        return metadata

    def _process_registry(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        metadata["items"] = metadata.get("items") or []
        metadata["itemCount"] = len(metadata["items"])
        metadata["version"] = (metadata.get("version") or 0) + 1
        return metadata

    # ============= Content generation =============

    def generate_content(self, entity: Dict[str, Any]) -> str:
        entity_type = entity.get("type")
        if entity_type == "person":
            return self._person_content(entity)
        if entity_type == "household":
            return self._household_content(entity)
        if entity_type == "attendance":
            name = entity.get("personName") or entity.get("personId")
            return (f"Attendance: {name} at {entity.get('eventName')} on {entity.get('date')}. "
                    f"Status: {entity.get('status')}")
        if entity_type == "ministry_role":
            name = entity.get("personName") or entity.get("personId")
            return f"Ministry Role: {name} serves as {entity.get('role')} in {entity.get('ministryName')}"
        return json.dumps(entity, sort_keys=True, default=str)

    def _person_content(self, person: Dict[str, Any]) -> str:
        contact = person.get("contact") or {}
        emails = contact.get("emails") or []
        phones = contact.get("phones") or []
        custom = person.get("customFields") or {}

        parts = [
            f"Person: {person.get('firstName') or ''} {person.get('lastName') or ''}".rstrip(),
            f"Known as: {person['nickname']}" if person.get("nickname") else None,
            f"Status: {person.get('membershipStatus')}",
            f"Email: {emails[0]['address']}" if emails and emails[0].get("address") else None,
            f"Phone: {phones[0]['number']}" if phones and phones[0].get("number") else None,
            f"Ministry: {custom['ministry']}" if custom.get("ministry") else None,
            f"Spiritual Gifts: {', '.join(custom['spiritualGifts'])}" if custom.get("spiritualGifts") else None,
            f"Tags: {', '.join(person['tags'])}" if person.get("tags") else None,
            f"Notes: {person['notes']}" if person.get("notes") else None,
        ]
        return "\n".join(part for part in parts if part)

    def _household_content(self, household: Dict[str, Any]) -> str:
        address = household.get("address")
        parts = [
            f"Household: {household.get('name')}",
            f"Formal: {household['formalName']}" if household.get("formalName") else None,
            f"Members: {len(household.get('members') or [])} people",
            (f"Address: {address.get('street1')}, {address.get('city')}, {address.get('state')}"
             if address else None),
            f"Tags: {', '.join(household['tags'])}" if household.get("tags") else None,
        ]
        return "\n".join(part for part in parts if part)

    # ============= Result formatting =============

    def filter_metadata_by_privacy(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        privacy = metadata.get("privacy")
        if not privacy:
            return metadata

        filtered = self._copy_metadata(metadata)
        contact = filtered.get("contact")
        if isinstance(contact, dict):
            if privacy.get("hideEmail") and "emails" in contact:
                contact["emails"] = []
            if privacy.get("hidePhone") and "phones" in contact:
                contact["phones"] = []
            if privacy.get("hideAddress"):
                contact.pop("address", None)
        return filtered

    def format_result(self, record: MemoryRecord) -> MemoryRecord:
        return dataclasses.replace(record, metadata=self.filter_metadata_by_privacy(record.metadata))

    # ============= Registries =============

    async def get_or_create_registry(self, owner_id: str, registry_type: str,
                                     default_items: Optional[List[Any]] = None) -> MemoryRecord:
        """Return the owner's registry of registry_type, creating it on first use."""
        registries = await self.search_by_metadata(owner_id, {"type": "registry", "registryType": registry_type})
        if registries:
            return registries[0]

        metadata = {
            "type": "registry",
            "registryType": registry_type,
            "name": f"{registry_type}_registry",
            "items": list(default_items or []),
        }
        content = f"Registry: {registry_type} - System registry for {registry_type}"
        return await self.store(owner_id, content, metadata)

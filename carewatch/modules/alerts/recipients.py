"""Recipient lookup over care relationships owned by the host platform."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog
from pydantic import Field, TypeAdapter

from carewatch.modules.alerts.documents import CareRelationshipDocument
from carewatch.modules.alerts.models import Channel
from carewatch.shared.schemas import CamelModel

log = structlog.get_logger()


class RelationshipType(str, Enum):
    PRIMARY_CAREGIVER = "primary_caregiver"
    FAMILY_MEMBER = "family_member"
    HEALTHCARE_PROVIDER = "healthcare_provider"
    FRIEND = "friend"
    OTHER = "other"


class RelationshipStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class ContactPoints(CamelModel):
    email: str | None = None
    bot_chat_id: str | None = None
    whatsapp_phone: str | None = None

    def for_channel(self, channel: Channel) -> str | None:
        value = {
            Channel.EMAIL: self.email,
            Channel.BOT_MESSAGING: self.bot_chat_id,
            Channel.BUSINESS_MESSAGING: self.whatsapp_phone,
        }[channel]
        if value is None:
            return None
        return value.strip() or None


class CareRelationship(CamelModel):
    id: str
    patient_id: str
    caregiver_id: str
    relationship_type: RelationshipType = RelationshipType.FAMILY_MEMBER
    status: RelationshipStatus = RelationshipStatus.ACTIVE
    can_receive_alerts: bool = True
    # Secondary caregivers only hear about escalated alerts
    escalation_only: bool = False
    contacts: ContactPoints = Field(default_factory=ContactPoints)

    @property
    def is_alertable(self) -> bool:
        return self.status is RelationshipStatus.ACTIVE and self.can_receive_alerts


@dataclass(frozen=True)
class Recipient:
    caregiver_id: str
    relationship_id: str
    channel: Channel
    destination: str


def select_recipients(
    relationships: list[CareRelationship], channel: Channel, escalation: bool
) -> list[Recipient]:
    """Recipients for a channel, one per distinct destination.

    The initial set skips escalation-only relationships. The escalation set
    is every alertable relationship.
    """
    recipients: list[Recipient] = []
    seen: set[str] = set()
    for relationship in relationships:
        if not relationship.is_alertable:
            continue
        if relationship.escalation_only and not escalation:
            continue
        destination = relationship.contacts.for_channel(channel)
        if destination is None or destination in seen:
            continue
        seen.add(destination)
        recipients.append(
            Recipient(
                caregiver_id=relationship.caregiver_id,
                relationship_id=relationship.id,
                channel=channel,
                destination=destination,
            )
        )
    return recipients


def primary_relationship(relationships: list[CareRelationship]) -> CareRelationship | None:
    alertable = [item for item in relationships if item.is_alertable and not item.escalation_only]
    for relationship in alertable:
        if relationship.relationship_type is RelationshipType.PRIMARY_CAREGIVER:
            return relationship
    return alertable[0] if alertable else None


class RecipientDirectory(ABC):
    @abstractmethod
    async def relationships_for(self, patient_id: str) -> list[CareRelationship]: ...

    async def recipients_for(
        self, patient_id: str, channel: Channel, escalation: bool = False
    ) -> list[Recipient]:
        return select_recipients(await self.relationships_for(patient_id), channel, escalation)

    async def primary_relationship_id(self, patient_id: str) -> str | None:
        relationship = primary_relationship(await self.relationships_for(patient_id))
        return relationship.id if relationship else None


class StaticRecipientDirectory(RecipientDirectory):
    def __init__(self, relationships: list[CareRelationship] | None = None) -> None:
        self._relationships = list(relationships or [])

    def add(self, relationship: CareRelationship) -> None:
        self._relationships.append(relationship)

    async def relationships_for(self, patient_id: str) -> list[CareRelationship]:
        return [item for item in self._relationships if item.patient_id == patient_id]


class MongoRecipientDirectory(RecipientDirectory):
    async def relationships_for(self, patient_id: str) -> list[CareRelationship]:
        documents = await CareRelationshipDocument.find(
            CareRelationshipDocument.patient_id == patient_id,
            CareRelationshipDocument.status == RelationshipStatus.ACTIVE.value,
        ).to_list()
        return [
            CareRelationship.model_validate(
                {**document.model_dump(exclude={"id", "revision_id"}), "id": str(document.id)}
            )
            for document in documents
        ]


_relationships_adapter = TypeAdapter(list[CareRelationship])


def load_relationships(path: Path | None) -> list[CareRelationship]:
    if path is None:
        return []
    try:
        return _relationships_adapter.validate_python(json.loads(path.read_text()))
    except FileNotFoundError:
        log.info("care relationships file not found, directory is empty", path=str(path))
        return []
    except Exception as exc:
        log.warning("care relationships load failed, directory is empty", path=str(path), error=str(exc))
        return []

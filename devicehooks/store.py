from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AnyHttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .auth import Principal
from .documents import DocumentStore
from .errors import AuthorizationError, DeviceHooksError, NotFoundError, ValidationError

log = logging.getLogger(__name__)

MOTION = "motion"
TEMPERATURE = "temperature"
BUCKETS = (MOTION, TEMPERATURE)
_EVENT_BUCKETS = {
    "motion": MOTION,
    "temperature": TEMPERATURE,
    "high_temperature": TEMPERATURE,
}
_HTTP_URL = TypeAdapter(AnyHttpUrl)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def bucket_for(event: Optional[str]) -> str:
    """Map a subscription event name to its bucket, rejecting unknown names."""

    key = (event or "").strip().lower()
    if key not in _EVENT_BUCKETS:
        raise ValidationError(
            "event must be one of: " + ", ".join(sorted(_EVENT_BUCKETS))
        )
    return _EVENT_BUCKETS[key]


def relay_bucket_for(payload: dict[str, Any]) -> str:
    """Bucket for an inbound device event; anything but motion is temperature."""

    event = payload.get("event") or payload.get("event_type") or MOTION
    return MOTION if str(event).strip().lower() == MOTION else TEMPERATURE


def validate_url(url: Optional[str]) -> str:
    candidate = (url or "").strip()
    if not candidate:
        raise ValidationError("url is required")
    try:
        _HTTP_URL.validate_python(candidate)
    except PydanticValidationError as exc:
        reason = exc.errors()[0].get("msg", "invalid url")
        raise ValidationError(f"invalid url: {reason}") from exc
    return candidate


def _empty() -> dict[str, list[dict[str, Any]]]:
    return {MOTION: [], TEMPERATURE: []}


def _normalized(doc: Optional[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    out = _empty()
    if doc:
        for bucket in BUCKETS:
            out[bucket] = list(doc.get(bucket) or [])
    return out


def _locate(doc: dict[str, list[dict[str, Any]]], sub_id: str) -> tuple[str, int] | None:
    for bucket in BUCKETS:
        for index, sub in enumerate(doc[bucket]):
            if sub.get("id") == sub_id:
                return bucket, index
    return None


def _can_modify(sub: dict[str, Any], requester: Principal) -> bool:
    return requester.is_admin or sub.get("owner") == requester.uid


class SubscriptionStore:
    """Webhook subscriptions grouped per device and event bucket.

    Mutations go through a single document transaction per call so that
    concurrent writers on one device never drop each other's changes.
    """

    def __init__(self, documents: DocumentStore) -> None:
        self.documents = documents

    def add(self, device_id: str, event_type: str, url: str, owner_uid: str) -> dict[str, Any]:
        if not device_id or not event_type or not url:
            raise ValidationError("deviceId, event and url are required")
        if not owner_uid:
            raise ValidationError("owner is required")
        bucket = bucket_for(event_type)
        url = validate_url(url)

        def mutate(current):
            doc = _normalized(current)
            sub = {
                "id": uuid.uuid4().hex,
                "url": url,
                "owner": owner_uid,
                "createdAt": _now(),
            }
            doc[bucket].append(sub)
            return sub, doc

        sub = self.documents.transaction(device_id, mutate)
        log.info("subscription %s added to %s/%s by %s", sub["id"], device_id, bucket, owner_uid)
        return sub

    def edit(
        self,
        device_id: str,
        sub_id: str,
        requester: Principal,
        url: Optional[str] = None,
        event: Optional[str] = None,
    ) -> dict[str, Any]:
        if url is None and event is None:
            raise ValidationError("nothing to update: supply url and/or event")
        new_url = validate_url(url) if url is not None else None
        new_bucket = bucket_for(event) if event is not None else None

        def mutate(current):
            if current is None:
                raise NotFoundError(f"no webhooks registered for device {device_id}")
            doc = _normalized(current)
            found = _locate(doc, sub_id)
            if found is None:
                raise NotFoundError(f"subscription {sub_id} not found")
            bucket, index = found
            sub = dict(doc[bucket][index])
            if not _can_modify(sub, requester):
                raise AuthorizationError("only the owner or an admin may edit this subscription")
            if new_url is not None:
                sub["url"] = new_url
            sub["updatedAt"] = _now()
            target = new_bucket or bucket
            if target == bucket:
                doc[bucket][index] = sub
            else:
                del doc[bucket][index]
                doc[target].append(sub)
            updated = {"id": sub["id"], "url": sub["url"], "owner": sub.get("owner"), "event": target}
            return updated, doc

        updated = self.documents.transaction(device_id, mutate)
        log.info("subscription %s on %s updated by %s", sub_id, device_id, requester.uid)
        return updated

    def delete(self, device_id: str, sub_id: str, requester: Principal) -> bool:
        def mutate(current):
            if current is None:
                return False, None
            doc = _normalized(current)
            found = _locate(doc, sub_id)
            if found is None:
                return False, None
            bucket, index = found
            if not _can_modify(doc[bucket][index], requester):
                raise AuthorizationError("only the owner or an admin may delete this subscription")
            del doc[bucket][index]
            return True, doc

        removed = self.documents.transaction(device_id, mutate)
        if removed:
            log.info("subscription %s removed from %s by %s", sub_id, device_id, requester.uid)
        return removed

    def list(self, device_id: str, requester: Principal) -> dict[str, list[dict[str, Any]]]:
        doc = _normalized(self.documents.get(device_id))
        if requester.is_admin:
            return doc
        return {
            bucket: [sub for sub in subs if sub.get("owner") == requester.uid]
            for bucket, subs in doc.items()
        }

    def subscriber_urls(self, device_id: str, event_type: str) -> list[str]:
        """Distinct subscriber URLs for a device bucket, in registration order.

        Read failures are logged and produce an empty list: relaying to nobody
        is always safe.
        """

        bucket = TEMPERATURE if event_type != MOTION else MOTION
        try:
            doc = self.documents.get(device_id)
        except DeviceHooksError as exc:
            log.error("could not load subscribers for %s/%s: %s", device_id, bucket, exc)
            return []
        if not doc:
            return []
        urls: list[str] = []
        for sub in doc.get(bucket) or []:
            url = sub.get("url")
            if url and url not in urls:
                urls.append(url)
        return urls

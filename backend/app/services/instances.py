from __future__ import annotations

import json
import logging
from typing import Optional

from pydantic import ValidationError

from backend.app.models import InstanceRecord, InstanceRegistration, Provider
from backend.app.services.cache import TTLCache
from backend.app.store import ChatStore

logger = logging.getLogger("whatsapp_ingest.instances")


class InstanceConfigError(Exception):
    pass


class InstanceDirectory:
    """
    Read-through lookup of registered provider instances.

    Only hits are cached, so an instance registered after a miss is visible on the
    next delivery without waiting for expiry.
    """

    def __init__(self, store: ChatStore, cache: TTLCache) -> None:
        self.store = store
        self.cache = cache

    def resolve(self, provider: Provider, external_ref: str) -> Optional[InstanceRecord]:
        key = (provider.value, external_ref)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        instance = self.store.get_instance_by_ref(provider, external_ref)
        if instance is not None:
            self.cache.set(key, instance)
        return instance

    def register(self, registration: InstanceRegistration) -> InstanceRecord:
        instance = self.store.register_instance(registration)
        self.cache.invalidate((registration.provider.value, registration.external_ref))
        logger.info(
            "instance_registered instance_id=%s provider=%s org_id=%s",
            instance.id,
            instance.provider.value,
            instance.organization_id,
        )
        return instance


def parse_instance_registrations(raw: str) -> list[InstanceRegistration]:
    if not raw:
        return []
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InstanceConfigError("WHATSAPP_INSTANCES must be a json list") from exc
    if not isinstance(decoded, list):
        raise InstanceConfigError("WHATSAPP_INSTANCES must be a json list")
    try:
        return [InstanceRegistration.model_validate(item) for item in decoded]
    except ValidationError as exc:
        raise InstanceConfigError(f"invalid instance registration: {exc.errors()[0]['msg']}") from exc

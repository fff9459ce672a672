"""
FieldLog Backend: Observation Service (Business Logic Orchestrator)
=====================================================================

What:  Validated, versioned CRUD for observations, plus conversion of an
       observation into a map element.
How:   Composes the validation gate, the schema migration engine and the
       injected VersionStore.
Who:   Called by the observation route handlers.

Write Flow (create / update):
    ┌──────────┐    ┌────────────┐    ┌─────────────┐    ┌──────────┐
    │ Payload  │───▶│  Validate  │───▶│  Whitelist  │───▶│  Store   │
    │ (Route)  │    │  (gate)    │    │  + stamp    │    │  (put)   │
    └──────────┘    └────────────┘    └─────────────┘    └──────────┘

Read Flow (get / list):
    Store heads ───▶ attach id/version ───▶ canonicalize ───▶ response

Concurrency:
    update() reads the parent version, then issues a conditional write that
    the store rejects if the parent stopped being a head in between. A
    rejected write surfaces as NoVersionError; nothing is retried here.
"""

import copy
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import ValidationError as PydanticValidationError

from fieldlog.exceptions import (
    InvalidFieldsError,
    NoVersionError,
    NotFoundError,
    StoreConflictError,
    StoreNotFoundError,
    TypeMismatchError,
    ValidationError,
)
from fieldlog.schemas.observation import ObservationFields
from fieldlog.services.migration import CURRENT_SCHEMA, USER_UPDATABLE_PROPS, canonicalize
from fieldlog.services.store_base import BatchOp, VersionStore
from fieldlog.services.validation import validate_observation

logger = logging.getLogger(__name__)

# Identity properties are derived from the store, never persisted in a value
IDENTITY_PROPS = ("id", "version")


def utc_now_iso() -> str:
    """Current time as ISO-8601 UTC with millisecond precision, e.g. 2024-01-15T12:00:00.000Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def whitelist_props(obs: Dict[str, Any]) -> Dict[str, Any]:
    """
    The client-writable subset of `obs` that was actually sent.

    Raises:
        InvalidFieldsError: A writable property has the wrong type
            (e.g. `tags` that is not an object).
    """
    try:
        fields = ObservationFields(**{k: obs[k] for k in USER_UPDATABLE_PROPS if k in obs})
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise InvalidFieldsError(
            f"Invalid value for `{field}`: {first.get('msg')}", field=field or None
        ) from e
    return fields.to_record()


def _strip_identity(value: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in value.items() if k not in IDENTITY_PROPS}


def _with_identity(key: str, version: str, value: Dict[str, Any]) -> Dict[str, Any]:
    obs = dict(value)
    obs["id"] = key
    obs["version"] = version
    return obs


def flat_obs(key: str, heads: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One observation per head version, each carrying its id and version."""
    return [_with_identity(key, version, value) for version, value in heads.items()]


class ObservationService:
    """
    Business logic layer for observation operations.

    Responsibilities:
        - create(): validate, whitelist, stamp, write a first version
        - get() / list(): read head sets and canonicalize legacy schemas
        - update(): optimistic-concurrency write of a new version
        - delete(): remove a record and its history
        - convert(): derive a map element from an observation, once

    Error Handling Strategy:
        Validation and lookup errors are raised before anything is written.
        StoreError from the store propagates unchanged, except the two
        store signals that mean "stale version" (not found, conflict),
        which become NoVersionError.
    """

    def __init__(self, store: VersionStore):
        self.store = store

    async def create(self, payload: Any) -> Dict[str, Any]:
        """
        Store a new observation.

        Returns:
            The stored record plus the store-assigned `id` and `version`.

        Raises:
            InvalidFieldsError: The payload failed validation.
            StoreError: The write failed.
        """
        validate_observation(payload)
        new_obs = whitelist_props(payload)
        new_obs["type"] = "observation"
        new_obs["schemaVersion"] = payload.get("schemaVersion") or CURRENT_SCHEMA
        now = utc_now_iso()
        new_obs["timestamp"] = now
        new_obs["created_at"] = now

        node = await self.store.create(new_obs)
        logger.info("Observation %s created (version %s)", node.key, node.version)
        return _with_identity(node.key, node.version, new_obs)

    async def get(self, observation_id: str) -> List[Dict[str, Any]]:
        """
        Every head revision of `observation_id`, canonicalized.

        More than one entry means concurrent edits that nobody merged yet.
        An unknown id yields an empty list.
        """
        heads = await self.store.get(observation_id)
        if len(heads) > 1:
            logger.info("Observation %s has %d heads (conflict)", observation_id, len(heads))
        return [canonicalize(obs) for obs in flat_obs(observation_id, heads)]

    async def list(self) -> List[Dict[str, Any]]:
        """
        Every head revision of every observation in the store.

        This is a full scan held in memory; it grows with the store.
        """
        results = []
        async for key, heads in self.store.iter_heads():
            for version, value in heads.items():
                if not value:
                    continue
                obs = canonicalize(_with_identity(key, version, value))
                if obs.get("type") != "observation":
                    continue
                results.append(obs)
        logger.debug("Listed %d observations", len(results))
        return results

    async def update(self, observation_id: str, payload: Any) -> Dict[str, Any]:
        """
        Write a new version of `observation_id` superseding `payload["version"]`.

        The payload replaces the parent's client-writable properties as a
        whole; read-only properties such as `created_at` carry over.

        Raises:
            ValidationError: The payload has no string `version`.
            TypeMismatchError: `payload["id"]` differs from `observation_id`, or
                the named version belongs to another record.
            InvalidFieldsError: The payload failed validation.
            NoVersionError: The named version is unknown or no longer a head.
        """
        if not isinstance(payload, dict) or not isinstance(payload.get("version"), str):
            raise ValidationError(
                'the given observation must have a "version" set', field="version"
            )
        if payload.get("id") != observation_id:
            raise TypeMismatchError(payload.get("id"), observation_id)

        validate_observation(payload)
        version = payload["version"]

        try:
            parent = await self.store.get_by_version(version)
        except StoreNotFoundError:
            raise NoVersionError(version)
        if parent.key != observation_id:
            raise TypeMismatchError(parent.key, observation_id)

        # Writable props the client omitted are dropped, not inherited
        final_obs = {
            k: v for k, v in _strip_identity(parent.value).items()
            if k not in USER_UPDATABLE_PROPS
        }
        final_obs.update(whitelist_props(payload))
        final_obs["type"] = "observation"
        final_obs["timestamp"] = utc_now_iso()

        try:
            node = await self.store.put(observation_id, final_obs, links=[version])
        except StoreConflictError:
            logger.info(
                "Rejected update of %s: version %s is no longer a head", observation_id, version
            )
            raise NoVersionError(version)

        logger.info("Observation %s updated (%s -> %s)", observation_id, version, node.version)
        return _with_identity(node.key, node.version, final_obs)

    async def delete(self, observation_id: str) -> Dict[str, Any]:
        """Remove `observation_id` and its whole history."""
        await self.store.delete(observation_id)
        logger.info("Observation %s deleted", observation_id)
        return {"deleted": True}

    async def convert(self, observation_id: str) -> Dict[str, Any]:
        """
        Create a map element (type "node") from an observation.

        Idempotent: if a head already links to an element through
        `tags.element_id`, that id is returned and nothing is written. The
        element and the updated observation are written as one atomic batch.

        Raises:
            NotFoundError: The observation has no revisions.
        """
        heads = await self.store.get(observation_id)
        if not heads:
            raise NotFoundError(resource="observation", resource_id=observation_id)

        for value in heads.values():
            tags = value.get("tags")
            if isinstance(tags, dict) and tags.get("element_id"):
                return {"id": tags["element_id"]}

        obs = _strip_identity(copy.deepcopy(next(iter(heads.values()))))
        element_id = secrets.token_hex(8)
        element = copy.deepcopy(obs)
        element["type"] = "node"

        tags = obs.get("tags")
        obs["tags"] = dict(tags) if isinstance(tags, dict) else {}
        obs["tags"]["element_id"] = element_id

        await self.store.batch([
            BatchOp(type="put", key=element_id, value=element),
            BatchOp(type="put", key=observation_id, value=obs),
        ])
        logger.info("Observation %s converted to element %s", observation_id, element_id)
        return {"id": element_id}

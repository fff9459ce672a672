"""
FieldLog Backend: Observation Schema Migration
================================================

What:  Maps observations written by older clients to the current schema (3).
How:   `detect_schema` runs an ordered list of shape predicates; `canonicalize`
       dispatches to one pure transform per detected schema. Anything that is
       not recognized is returned unchanged.
When:  Only on read (list/get). Stored revisions are never rewritten.

Historical schemas (neither carried a `schemaVersion` property):
    1  "Sinangoe" clients: string `device_id` and `created`, no `tags`;
       survey answers in `fields`, attachments as plain strings.
    2  "ECA" clients: everything under `tags`, including `tags.created` and
       `tags.fields`; no top-level `created_at`.
"""

import copy
from typing import Any, Callable, Dict, List, Optional, Tuple

CURRENT_SCHEMA = 3

# Top-level properties the client may set
USER_UPDATABLE_PROPS = (
    "lon",
    "lat",
    "attachments",
    "tags",
    "ref",
    "metadata",
    "fields",
    "schemaVersion",
)

# All valid top-level properties
TOP_LEVEL_PROPS = USER_UPDATABLE_PROPS + (
    "created_at",
    "timestamp",
    "id",
    "version",
    "type",
)

# Properties from schema 1 clients that carry no information any more
SKIP_OLD_PROPS = frozenset((
    "created_at_timestamp",
    "link",
    "device_id",
    "observedBy",
))


def _is_schema_1(obs: Dict[str, Any]) -> bool:
    return (
        isinstance(obs.get("device_id"), str)
        and isinstance(obs.get("created"), str)
        and "tags" not in obs
    )


def _is_schema_2(obs: Dict[str, Any]) -> bool:
    tags = obs.get("tags")
    return (
        "created_at" not in obs
        and isinstance(tags, dict)
        and isinstance(tags.get("created"), str)
    )


_UNTAGGED_SCHEMAS: List[Tuple[int, Callable[[Dict[str, Any]], bool]]] = [
    (1, _is_schema_1),
    (2, _is_schema_2),
]


def detect_schema(obs: Any) -> Optional[Any]:
    """
    Schema version of `obs`, or None when it cannot be determined.

    An explicit truthy `schemaVersion` wins and is returned verbatim.
    """
    if not isinstance(obs, dict):
        return None
    if obs.get("schemaVersion"):
        return obs["schemaVersion"]
    for version, matches in _UNTAGGED_SCHEMAS:
        if matches(obs):
            return version
    return None


def transform_schema_1(obs: Dict[str, Any]) -> Dict[str, Any]:
    """Sinangoe observation → current shape. Unknown properties become tags."""
    new_obs: Dict[str, Any] = {"tags": {}}
    for prop, value in obs.items():
        # Shapes other than lists are copied through untouched
        if prop == "attachments":
            if isinstance(value, list):
                value = [{"id": a} if isinstance(a, str) else a for a in value]
            new_obs["attachments"] = value if value is not None else []
        elif prop == "fields":
            new_obs["fields"] = copy.deepcopy(value) if value else []
            if not isinstance(new_obs["fields"], list):
                continue
            for f in new_obs["fields"]:
                if not isinstance(f, dict) or not f.get("answer") or not f.get("id"):
                    continue
                field_id = f["id"] if isinstance(f["id"], str) else str(f["id"])
                new_obs["tags"][field_id] = f["answer"]
        elif prop in SKIP_OLD_PROPS:
            continue
        elif prop == "tags":
            # Only reachable with an explicit schemaVersion of 1
            if isinstance(value, dict):
                new_obs["tags"].update(value)
            else:
                new_obs["tags"]["tags"] = value
        elif prop in TOP_LEVEL_PROPS:
            new_obs[prop] = value
        elif prop == "created":
            new_obs["created_at"] = value
        else:
            new_obs["tags"][prop] = value
    return new_obs


def transform_schema_2(obs: Dict[str, Any]) -> Dict[str, Any]:
    """ECA observation → current shape. `fields` and `created` leave `tags`."""
    new_obs = dict(obs)
    new_obs["tags"] = {}
    tags = obs.get("tags")
    for prop, value in (tags if isinstance(tags, dict) else {}).items():
        if prop == "fields":
            new_obs["fields"] = value
        elif prop == "created":
            new_obs["created_at"] = value
        else:
            new_obs["tags"][prop] = value
    return new_obs


_TRANSFORMS: Dict[Any, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: transform_schema_1,
    2: transform_schema_2,
}


def canonicalize(obs: Any) -> Any:
    """Return `obs` in the current schema. Never raises."""
    version = detect_schema(obs)
    # Only numeric tags select a transform; True == 1 must not
    if not isinstance(version, (int, float)) or isinstance(version, bool):
        return obs
    transform = _TRANSFORMS.get(version)
    if transform is None:
        return obs
    return transform(obs)

"""
FieldLog Backend: Observation Validation Gate
===============================================

Pure checks run before an observation is written. Rules are checked in
order and the first failure is reported:

    1. the observation is a non-empty object
    2. type == "observation"
    3. attachments, if present, is a list of objects with a string `id`
    4. lat/lon, if either is present, are both present and numeric
"""

import json
from numbers import Number
from typing import Any

from fieldlog.exceptions import InvalidFieldsError, MalformedInputError


def decode_payload(raw: bytes) -> Any:
    """
    Parse a JSON request body.

    Raises:
        MalformedInputError: The body is empty or not valid JSON.
    """
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedInputError(context={"reason": str(e)}) from e


def _is_number(value: Any) -> bool:
    # bool is a subclass of int but is not a coordinate
    return isinstance(value, Number) and not isinstance(value, bool)


def validate_observation(obs: Any) -> None:
    """
    Raises:
        InvalidFieldsError: With the message of the first rule that failed.
    """
    if not isinstance(obs, dict) or not obs:
        raise InvalidFieldsError("Observation is undefined")
    if obs.get("type") != "observation":
        raise InvalidFieldsError("Observation must be of type `observation`", field="type")

    attachments = obs.get("attachments")
    if attachments is not None:
        if not isinstance(attachments, list):
            raise InvalidFieldsError(
                "Observation attachments must be an array", field="attachments"
            )
        for i, att in enumerate(attachments):
            if not isinstance(att, dict) or not att:
                raise InvalidFieldsError(
                    f"Attachment at index `{i}` is undefined", field="attachments"
                )
            if not isinstance(att.get("id"), str):
                raise InvalidFieldsError(
                    f"Attachment must have a string id property (at index `{i}`)",
                    field="attachments",
                )

    if "lat" in obs or "lon" in obs:
        if "lat" not in obs or "lon" not in obs:
            raise InvalidFieldsError("one of lat and lon are undefined")
        if not _is_number(obs["lat"]) or not _is_number(obs["lon"]):
            raise InvalidFieldsError("lon and lat must be a number")

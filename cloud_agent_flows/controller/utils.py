"""Helpers shared by the exchange components."""
import base64
import binascii
import json
import re
from typing import Any, Dict, List, Mapping, Optional

from .errors import RemoteError, ValidationError


INVITATION_URL_PREFIX = re.compile(r"^https?://.*?[?&]c_i=", re.IGNORECASE)


def require(value: Optional[str], name: str) -> str:
    """Return value, raising ValidationError if it is missing or blank."""
    if value is None or not str(value).strip():
        raise ValidationError(f"Missing required param {name!r}")
    return value


def decode_invitation(invitation_url: str) -> Dict[str, Any]:
    """Decode a connection invitation from its URL or bare base64 form."""
    encoded = INVITATION_URL_PREFIX.sub("", require(invitation_url, "invitation_url"))
    encoded = encoded.strip()
    # Invitation URLs are often urlsafe and unpadded
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        raw = base64.b64decode(padded, altchars=b"-_", validate=True)
        invitation = json.loads(raw)
    except (binascii.Error, ValueError) as err:
        raise ValidationError(
            "Invalid invitation: it is not base64 encoded JSON"
        ) from err

    if not isinstance(invitation, dict):
        raise ValidationError("Invalid invitation: expected a JSON object")
    return invitation


def expect(body: Mapping[str, Any], key: str, operation: str) -> str:
    """Return a required field of a command response."""
    value = body.get(key)
    if not value:
        raise RemoteError(f"Failed to {operation}", detail=f"response missing {key}")
    return value


def candidates(body: Mapping[str, Any], key: str) -> List[Mapping[str, Any]]:
    """Return the candidate records of a discovery response.

    The service may answer with a list under "results", with a single record,
    or with an empty object when nothing has been received yet.
    """
    results = body.get("results")
    if isinstance(results, list):
        return [
            entry for entry in results if isinstance(entry, dict) and entry.get(key)
        ]
    if body.get(key):
        return [body]
    return []

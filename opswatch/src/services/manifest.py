"""
Static endpoint manifest parser and validator.
"""

import os
import yaml
from typing import List, Dict, Any, Optional

class ManifestError(Exception):
    """Raised when the endpoint manifest is invalid."""
    pass

def normalize_url(raw: str) -> str:
    """Trim whitespace, strip one trailing slash and lower-case."""
    url = raw.strip()
    if url.endswith("/"):
        url = url[:-1]
    return url.lower()

def endpoint_identity(url: str, api_method: str, server_name: str, expected_status_code: int) -> tuple:
    """Identity tuple used for duplicate detection."""
    return (normalize_url(url), api_method.upper(), server_name, int(expected_status_code))

def load_manifest(path: str) -> Optional[List[Dict[str, Any]]]:
    """
    Read the manifest file at `path`.
    Returns validated entries or None if the file does not exist.
    """
    if not os.path.exists(path):
        return None

    with open(path, "r") as f:
        return parse_manifest(f.read())

def parse_manifest(content: str) -> List[Dict[str, Any]]:
    """Parse manifest from a JSON or YAML string."""
    try:
        entries = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid manifest: {e}")

    return validate_manifest(entries)

def validate_manifest(entries: Optional[Any]) -> List[Dict[str, Any]]:
    """Validate manifest structure."""
    if entries is None:
        return []

    if isinstance(entries, dict):
        entries = entries.get("endpoints", [])

    if not isinstance(entries, list):
        raise ManifestError("Manifest must be a list of endpoints")

    return [validate_entry(entry, i) for i, entry in enumerate(entries)]

def validate_entry(entry: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Validate a single endpoint definition."""
    if not isinstance(entry, dict):
        raise ManifestError(f"Endpoint {index} must be a dictionary")

    for field in ("service_name", "server_name", "url"):
        if field not in entry:
            raise ManifestError(f"Endpoint {index} missing '{field}'")
        if not isinstance(entry[field], str) or not entry[field].strip():
            raise ManifestError(f"Endpoint {index} '{field}' must be a non-empty string")

    method = entry.get("api_method", "GET")
    if not isinstance(method, str):
        raise ManifestError(f"Endpoint {index} 'api_method' must be a string")

    expected = entry.get("expected_status_code", 200)
    if isinstance(expected, bool) or not isinstance(expected, int):
        raise ManifestError(f"Endpoint {index} 'expected_status_code' must be an integer")

    return {
        "service_name": entry["service_name"],
        "server_name": entry["server_name"],
        "url": normalize_url(entry["url"]),
        "api_method": method.upper(),
        "expected_status_code": expected,
    }

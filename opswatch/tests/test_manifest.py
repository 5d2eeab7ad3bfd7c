"""Tests for the endpoint manifest parser."""

import pytest
from opswatch.src.services.manifest import (
    endpoint_identity,
    load_manifest,
    normalize_url,
    parse_manifest,
    ManifestError,
)

def test_valid_json_manifest():
    content = """
[
  {"service_name": "billing", "server_name": "prod-1", "url": "https://Billing.example.com/health/",
   "api_method": "get", "expected_status_code": 204},
  {"service_name": "search", "server_name": "prod-2", "url": "https://search.example.com/ping"}
]
"""
    result = parse_manifest(content)
    assert len(result) == 2
    assert result[0]["url"] == "https://billing.example.com/health"
    assert result[0]["api_method"] == "GET"
    assert result[0]["expected_status_code"] == 204
    assert result[1]["api_method"] == "GET"
    assert result[1]["expected_status_code"] == 200

def test_yaml_manifest_with_endpoints_key():
    content = """
endpoints:
  - service_name: billing
    server_name: prod-1
    url: https://billing.example.com/health
"""
    result = parse_manifest(content)
    assert result[0]["service_name"] == "billing"

def test_missing_url():
    content = """
- service_name: billing
  server_name: prod-1
"""
    with pytest.raises(ManifestError, match="missing 'url'"):
        parse_manifest(content)

def test_blank_server_name():
    content = """
- service_name: billing
  server_name: "  "
  url: https://billing.example.com
"""
    with pytest.raises(ManifestError, match="non-empty string"):
        parse_manifest(content)

def test_expected_status_code_must_be_int():
    content = """
- service_name: billing
  server_name: prod-1
  url: https://billing.example.com
  expected_status_code: "200"
"""
    with pytest.raises(ManifestError, match="must be an integer"):
        parse_manifest(content)

def test_not_a_list():
    with pytest.raises(ManifestError, match="must be a list"):
        parse_manifest("just a string")

def test_invalid_yaml():
    with pytest.raises(ManifestError, match="Invalid manifest"):
        parse_manifest("[unclosed")

def test_empty_manifest():
    assert parse_manifest("") == []

def test_load_missing_file(tmp_path):
    assert load_manifest(str(tmp_path / "nope.json")) is None

def test_load_file(tmp_path):
    path = tmp_path / "endpoints.json"
    path.write_text('[{"service_name": "a", "server_name": "s", "url": "http://a.local/"}]')
    assert load_manifest(str(path))[0]["url"] == "http://a.local"

def test_normalize_url():
    assert normalize_url("  HTTPS://Example.com/Health/  ") == "https://example.com/health"
    # only one trailing slash is removed
    assert normalize_url("http://a.local//") == "http://a.local/"

def test_identity_ignores_case_and_trailing_slash():
    assert endpoint_identity("http://A.local/", "get", "s1", 200) == endpoint_identity(
        "http://a.local", "GET", "s1", 200
    )
    assert endpoint_identity("http://a.local", "GET", "s1", 200) != endpoint_identity(
        "http://a.local", "GET", "s2", 200
    )

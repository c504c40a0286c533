#!/usr/bin/env python3
"""
Test script for the secret version tracker
"""

import io
import os
import sys
import json
from unittest.mock import MagicMock, patch

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from provisioner import ConfigurationError, CredentialError, RequestType, SecretClient
from secret_version import SecretVersionReconciler, SecretVersionRequest, main


def _reconciler(version="48213"):
    secret_client = MagicMock(spec=SecretClient)
    secret_client.latest_version.return_value = version
    return SecretVersionReconciler(secret_client=secret_client)


def _event(request_type, identity_token=None):
    event = {
        "requestType": request_type,
        "properties": {"secret": "ops/app-user", "timestamp": "2026-10-19T12:00:00Z"},
    }
    if identity_token is not None:
        event["identityToken"] = identity_token
    return SecretVersionRequest.from_event(event)


def test_create_and_update_report_active_version():
    """Create and Update both look up the active version"""
    print("🧪 Testing secret version lookups...")

    reconciler = _reconciler()

    assert reconciler.reconcile(_event("Create")) == {"identityToken": "ops/app-user", "latestVersionId": "48213"}
    assert reconciler.reconcile(_event("Update", identity_token="ops/app-user")) == {
        "identityToken": "ops/app-user",
        "latestVersionId": "48213",
    }
    assert reconciler.secret_client.latest_version.call_count == 2
    reconciler.secret_client.latest_version.assert_called_with("ops/app-user")

    print("✅ Secret version lookup tests passed!")


def test_delete_echoes_recorded_version():
    reconciler = _reconciler()
    response = reconciler.reconcile(_event("Delete", identity_token="47000"))

    assert response == {"identityToken": "ops/app-user", "latestVersionId": "47000"}
    reconciler.secret_client.latest_version.assert_not_called()


def test_missing_version_is_fatal():
    reconciler = _reconciler()
    reconciler.secret_client.latest_version.side_effect = CredentialError("No latest version found")

    try:
        reconciler.reconcile(_event("Create"))
    except CredentialError:
        pass
    else:
        raise AssertionError("Expected CredentialError")


def test_request_validation():
    request = _event("Create", identity_token="ignored")
    assert request.request_type is RequestType.CREATE
    assert request.identity_token is None

    bad_events = [
        {"requestType": "Create", "properties": {}},
        {"requestType": "Create"},
        {"requestType": "Update", "properties": {"secret": "ops/app-user"}},
        {"requestType": "Rotate", "properties": {"secret": "ops/app-user"}},
        "Create",
    ]
    for event in bad_events:
        try:
            SecretVersionRequest.from_event(event)
        except ConfigurationError:
            continue
        raise AssertionError(f"Expected ConfigurationError for {event!r}")


def test_main_prints_response():
    event = json.dumps({"requestType": "Delete", "identityToken": "47000", "properties": {"secret": "app-user"}})

    with patch('secret_version.SecretVersionReconciler') as reconciler, \
         patch('sys.stdin', io.StringIO(event)), \
         patch('sys.stdout', new_callable=io.StringIO) as stdout:
        reconciler.return_value.reconcile.return_value = {"identityToken": "app-user", "latestVersionId": "47000"}
        assert main([]) == 0

    assert json.loads(stdout.getvalue()) == {"identityToken": "app-user", "latestVersionId": "47000"}

    with patch('sys.stdin', io.StringIO('{"requestType": "Delete"}')):
        assert main([]) == 1


def main_tests():
    """Run all tests"""
    tests = [value for name, value in sorted(globals().items()) if name.startswith("test_") and callable(value)]
    try:
        for test in tests:
            test()
        print("✅ All tests passed!")
        return 0
    except AssertionError as e:
        print(f"\n❌ Test failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main_tests())

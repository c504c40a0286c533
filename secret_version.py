"""
Secret Version Tracker

Reports the resource version currently active for a Kubernetes Secret. The
orchestrator feeds the returned version into the provisioner's properties so
that rotating the user's secret triggers an Update event.

Events carry the secret id in properties.secret and may carry a free-form
properties.timestamp, which only exists to make every deployment look changed.
"""

import sys
import json
import logging
import argparse
from dataclasses import dataclass
from typing import Optional

from provisioner import (
    ConfigurationError,
    RED,
    RESET,
    RequestType,
    SecretClient,
    load_event,
    read_event_text,
)

logger = logging.getLogger("postgres-provisioner.secret-version")


@dataclass(frozen=True)
class SecretVersionRequest:
    request_type: RequestType
    secret_id: str
    identity_token: Optional[str] = None

    @classmethod
    def from_event(cls, event) -> "SecretVersionRequest":
        if not isinstance(event, dict):
            raise ConfigurationError("Event must be a mapping")

        try:
            request_type = RequestType(event.get("requestType"))
        except ValueError:
            raise ConfigurationError(f"Unknown requestType: {event.get('requestType')!r}")

        properties = event.get("properties")
        if not isinstance(properties, dict):
            raise ConfigurationError("Event 'properties' must be a mapping")
        secret_id = properties.get("secret")
        if not isinstance(secret_id, str) or not secret_id:
            raise ConfigurationError("Property 'secret' must be a non-empty string")

        identity_token = event.get("identityToken")
        if request_type is not RequestType.CREATE:
            if not isinstance(identity_token, str) or not identity_token:
                raise ConfigurationError(f"{request_type.value} events require an identityToken")
        else:
            identity_token = None

        return cls(request_type=request_type, secret_id=secret_id, identity_token=identity_token)


class SecretVersionReconciler:
    """Resolves the active version of a secret for Create/Update, echoes it back on Delete"""

    def __init__(self, secret_client: Optional[SecretClient] = None):
        self.secret_client = secret_client or SecretClient()

    def reconcile(self, request: SecretVersionRequest) -> dict:
        """
        Args:
            request: Validated secret version event

        Returns:
            {"identityToken": <secret id>, "latestVersionId": <version>}
        """
        if request.request_type is RequestType.DELETE:
            # Nothing to verify on delete, hand back what the caller recorded
            version = request.identity_token
        else:
            version = self.secret_client.latest_version(request.secret_id)
            logger.info(f"Secret {request.secret_id} is at version {version}")

        return {"identityToken": request.secret_id, "latestVersionId": version}


def main(argv=None):
    parser = argparse.ArgumentParser(description="Report the active version of a Kubernetes Secret")
    parser.add_argument("event", nargs="?", help="Event document (YAML or JSON), stdin when omitted")
    args = parser.parse_args(argv)

    try:
        request = SecretVersionRequest.from_event(load_event(read_event_text(args.event)))
        response = SecretVersionReconciler().reconcile(request)
    except Exception as e:
        logger.critical(f"{RED}Fatal error: {e}{RESET}", exc_info=True)
        return 1

    print(json.dumps(response))
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
PostgreSQL User and Database Provisioner

This provisioner reconciles a single PostgreSQL user and the database it owns
against declarative Create / Update / Delete events. Credentials for both the
administrative user and the managed user are read from Kubernetes Secrets.

Features:
- Create, update and delete of one user/database pair per event
- Per-axis conflict policies (Fail / Adopt / DeleteAndRecreate, Ignore / Create, ...)
- Stable identity token that rejects renames after creation
- Idempotent delete (DROP ... IF EXISTS)
- Identifier quoting with psycopg2.sql for every user and database name
- Connections released on every exit path
- Structured logging with severity levels
"""

import os
import re
import sys
import json
import yaml
import base64
import logging
import argparse
import psycopg2
from psycopg2 import sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Tuple

# ANSI color codes
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def resolve_log_level(name: Optional[str]) -> str:
    """Normalise a level name, falling back to INFO for anything unrecognised"""
    level = (name or "INFO").upper()
    return level if level in LOG_LEVELS else "INFO"


# Configure structured logging
logging.basicConfig(
    level=resolve_log_level(os.getenv("LOG_LEVEL")),
    format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}',
    handlers=[logging.StreamHandler(sys.stderr)]
)
logger = logging.getLogger("postgres-provisioner")


# ============================================================================
# CONFIGURATION
# ============================================================================

class Config:
    """Provisioner configuration loaded from environment variables"""

    # Kubernetes settings
    NAMESPACE = os.getenv("NAMESPACE", "postgres")

    # PostgreSQL settings
    ADMIN_DATABASE = os.getenv("ADMIN_DATABASE", "postgres")
    # "require" encrypts the connection without verifying the server certificate
    DB_SSLMODE = os.getenv("DB_SSLMODE", "require")
    CONNECT_TIMEOUT = int(os.getenv("CONNECT_TIMEOUT", "10"))


# ============================================================================
# ERRORS
# ============================================================================

class ProvisionerError(Exception):
    """Base class for every error raised by the provisioner itself"""


class ConfigurationError(ProvisionerError):
    """The event is malformed or a required field is missing"""


class CredentialError(ProvisionerError):
    """A secret is absent or does not hold a username and password"""


class IdentityError(ProvisionerError):
    """The identity token supplied by the caller does not match the resource"""


class CollisionError(ProvisionerError):
    """The managed user and the admin user resolve to the same username"""


# ============================================================================
# DATA MODELS
# ============================================================================

class RequestType(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class OnCreateIfExists(str, Enum):
    FAIL = "Fail"
    ADOPT = "Adopt"
    DELETE_AND_RECREATE = "DeleteAndRecreate"


class OnDelete(str, Enum):
    DELETE = "Delete"
    RETAIN = "Retain"


class OnMissing(str, Enum):
    IGNORE = "Ignore"
    CREATE = "Create"


class Apply(str, Enum):
    ALWAYS = "Always"
    NEVER = "Never"


@dataclass(frozen=True)
class Credentials:
    """Username and password resolved from a secret"""
    username: str
    password: str = field(repr=False)


# Event property name -> (ResourceSpec field, enum type, default)
POLICY_FIELDS = {
    "onCreateIfExists": ("on_create_if_exists", OnCreateIfExists, OnCreateIfExists.FAIL),
    "onDelete": ("on_delete", OnDelete, OnDelete.DELETE),
    "onUpdateIfUserDoesNotExist": ("on_update_if_user_does_not_exist", OnMissing, OnMissing.IGNORE),
    "onUpdateIfDatabaseDoesNotExist": ("on_update_if_database_does_not_exist", OnMissing, OnMissing.IGNORE),
    "onUpdateSetUserPassword": ("on_update_set_user_password", Apply, Apply.NEVER),
    "onUpdateSetUserPermissions": ("on_update_set_user_permissions", Apply, Apply.NEVER),
    "onUpdateSetDatabaseOwnership": ("on_update_set_database_ownership", Apply, Apply.NEVER),
}


def _require_string(properties: dict, key: str) -> str:
    value = properties.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"Property '{key}' must be a non-empty string")
    return value


def _parse_port(value) -> int:
    # bool is an int subclass, reject it explicitly
    if isinstance(value, bool):
        raise ConfigurationError(f"Property 'port' must be an integer, got {value!r}")
    if isinstance(value, int):
        port = value
    elif isinstance(value, str) and re.fullmatch(r"[0-9]+", value):
        port = int(value)
    else:
        raise ConfigurationError(f"Property 'port' must be an integer, got {value!r}")
    if not 0 < port < 65536:
        raise ConfigurationError(f"Property 'port' out of range: {port}")
    return port


@dataclass(frozen=True)
class ResourceSpec:
    """Desired state of one user/database pair and its conflict policies"""
    host: str
    port: int
    admin_secret: str
    user_secret: str
    database_name: str
    on_create_if_exists: OnCreateIfExists = OnCreateIfExists.FAIL
    on_delete: OnDelete = OnDelete.DELETE
    on_update_if_user_does_not_exist: OnMissing = OnMissing.IGNORE
    on_update_if_database_does_not_exist: OnMissing = OnMissing.IGNORE
    on_update_set_user_password: Apply = Apply.NEVER
    on_update_set_user_permissions: Apply = Apply.NEVER
    on_update_set_database_ownership: Apply = Apply.NEVER

    @classmethod
    def from_properties(cls, properties) -> "ResourceSpec":
        """
        Validate event properties into a ResourceSpec

        Args:
            properties: Mapping taken from the event's "properties" key

        Returns:
            ResourceSpec with every policy set, defaults filled in

        Raises:
            ConfigurationError: If a field is missing or has an invalid value
        """
        if not isinstance(properties, dict):
            raise ConfigurationError("Event 'properties' must be a mapping")

        policies = {}
        for key, (attr, enum_type, default) in POLICY_FIELDS.items():
            raw = properties.get(key)
            if raw is None:
                policies[attr] = default
                continue
            try:
                policies[attr] = enum_type(raw)
            except ValueError:
                allowed = ", ".join(member.value for member in enum_type)
                raise ConfigurationError(f"Property '{key}' must be one of {allowed}, got {raw!r}")

        if "port" not in properties:
            raise ConfigurationError("Property 'port' is required")

        return cls(
            host=_require_string(properties, "host"),
            port=_parse_port(properties["port"]),
            admin_secret=_require_string(properties, "adminSecret"),
            user_secret=_require_string(properties, "userSecret"),
            database_name=_require_string(properties, "databaseName"),
            **policies
        )


@dataclass(frozen=True)
class ReconciliationRequest:
    """One lifecycle event for a user/database pair"""
    request_type: RequestType
    spec: ResourceSpec
    identity_token: Optional[str] = None

    @classmethod
    def from_event(cls, event) -> "ReconciliationRequest":
        """
        Validate a decoded event document into a ReconciliationRequest

        Raises:
            ConfigurationError: If the event is malformed
        """
        if not isinstance(event, dict):
            raise ConfigurationError("Event must be a mapping")

        try:
            request_type = RequestType(event.get("requestType"))
        except ValueError:
            raise ConfigurationError(f"Unknown requestType: {event.get('requestType')!r}")

        identity_token = event.get("identityToken")
        if request_type is not RequestType.CREATE:
            if not isinstance(identity_token, str) or not identity_token:
                raise ConfigurationError(f"{request_type.value} events require an identityToken")
        else:
            identity_token = None

        return cls(
            request_type=request_type,
            spec=ResourceSpec.from_properties(event.get("properties")),
            identity_token=identity_token
        )


def load_event(text: str):
    """Parse an event document; YAML is a superset of JSON so both are accepted"""
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Event is not valid YAML or JSON: {e}")


# ============================================================================
# IDENTITY TOKEN
# ============================================================================

def compute_identity(host: str, database_name: str, username: str) -> str:
    return "/".join([host, database_name, username])


def identity_matches(expected: str, host: str, database_name: str, username: str) -> bool:
    return expected == compute_identity(host, database_name, username)


# ============================================================================
# ERROR CLASSIFICATION
# ============================================================================

class ErrorKind(Enum):
    """
    Database conditions the reconciler knows how to react to.

    Values are SQLSTATE codes, see
    https://www.postgresql.org/docs/current/errcodes-appendix.html
    """
    DUPLICATE_USER = "42710"
    DUPLICATE_DATABASE = "42P04"
    INSUFFICIENT_PRIVILEGE = "42501"
    AUTHENTICATION_FAILED = "28P01"
    UNKNOWN = None


_KINDS_BY_CODE = {kind.value: kind for kind in ErrorKind if kind.value is not None}


def classify_error(error: BaseException) -> ErrorKind:
    """
    Map a raised error onto a known database condition

    Args:
        error: Any exception raised while talking to the database

    Returns:
        The matching ErrorKind, or ErrorKind.UNKNOWN for anything without a
        recognised SQLSTATE (including non-psycopg2 errors)
    """
    if not isinstance(error, psycopg2.Error):
        return ErrorKind.UNKNOWN
    return _KINDS_BY_CODE.get(error.pgcode, ErrorKind.UNKNOWN)


# ============================================================================
# KUBERNETES SECRETS
# ============================================================================

class SecretClient:
    """Resolves credentials and secret versions from Kubernetes Secrets"""

    def __init__(self):
        try:
            config.load_incluster_config()
        except config.ConfigException:
            logger.warning("Failed to load in-cluster config, trying local kubeconfig")
            config.load_kube_config()

        self.v1 = client.CoreV1Api()

    @staticmethod
    def split_secret_id(secret_id: str) -> Tuple[str, str]:
        """Split "namespace/name" (or a bare name) into (namespace, name)"""
        namespace, _, name = secret_id.rpartition("/")
        return namespace or Config.NAMESPACE, name

    def _read_secret(self, secret_id: str):
        namespace, name = self.split_secret_id(secret_id)
        try:
            return self.v1.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == 404:
                raise CredentialError(f"Secret {name} not found in namespace {namespace}")
            logger.error(f"Error fetching Secret {name} in namespace {namespace}: {e}")
            raise

    def resolve(self, secret_id: str) -> Credentials:
        """
        Retrieve a username/password pair from a Kubernetes Secret

        Args:
            secret_id: "namespace/name" or a bare name in the default namespace

        Returns:
            Decoded credentials

        Raises:
            CredentialError: If the secret is absent, lacks either field or holds malformed data
        """
        secret = self._read_secret(secret_id)
        data = secret.data or {}

        decoded = {}
        for key in ("username", "password"):
            encoded = data.get(key)
            if not isinstance(encoded, str) or not encoded:
                raise CredentialError(f"Secret {secret_id} exists but has no '{key}' field")
            try:
                decoded[key] = base64.b64decode(encoded, validate=True).decode()
            except ValueError as e:
                # binascii.Error and UnicodeDecodeError are both ValueErrors
                raise CredentialError(f"Secret {secret_id} has a malformed '{key}' field: {e}")

        return Credentials(username=decoded["username"], password=decoded["password"])

    def latest_version(self, secret_id: str) -> str:
        """Return the resource version currently active for a secret"""
        secret = self._read_secret(secret_id)
        version = secret.metadata.resource_version if secret.metadata else None
        if not version:
            raise CredentialError(f"No latest version found for secret {secret_id}")
        return version


# ============================================================================
# DATABASE SESSION
# ============================================================================

class DatabaseSession:
    """
    One lazily opened connection authenticated with the credentials of one secret.

    Credentials and connection are each resolved at most once and owned by this
    session until close(). Use as a context manager so the connection is
    released on every exit path.
    """

    def __init__(self, secret_client: SecretClient, secret_id: str, host: str, port: int,
                 database_name: str):
        self.secret_client = secret_client
        self.secret_id = secret_id
        self.host = host
        self.port = port
        self.database_name = database_name
        self._credentials: Optional[Credentials] = None
        self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False

    def get_credentials(self) -> Credentials:
        if self._credentials is None:
            self._credentials = self.secret_client.resolve(self.secret_id)
        return self._credentials

    def get_connection(self):
        """Connect on first use and return the same connection afterwards"""
        if self._connection is None:
            credentials = self.get_credentials()
            conn = psycopg2.connect(
                host=self.host,
                port=self.port,
                dbname=self.database_name,
                user=credentials.username,
                password=credentials.password,
                sslmode=Config.DB_SSLMODE,
                connect_timeout=Config.CONNECT_TIMEOUT
            )
            # CREATE/DROP DATABASE cannot run inside a transaction block
            conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
            self._connection = conn
            logger.info(f"Connected to {self.host}:{self.port}/{self.database_name} as {credentials.username}")
        return self._connection

    def close(self):
        """Close the connection if one was opened"""
        if self._connection is not None:
            conn, self._connection = self._connection, None
            conn.close()
            logger.debug(f"Closed connection to {self.host}:{self.port}/{self.database_name}")

    def execute(self, statement, params=None):
        conn = self.get_connection()
        with conn.cursor() as cur:
            cur.execute(statement, params)

    def create_user(self, username: str, password: str):
        self.execute(
            sql.SQL("CREATE USER {} WITH PASSWORD %s CREATEDB LOGIN;").format(sql.Identifier(username)),
            (password,)
        )
        logger.info(f"{WHITE}Created user: {username}{RESET}")

    def set_user_password(self, username: str, password: str):
        self.execute(
            sql.SQL("ALTER USER {} WITH PASSWORD %s;").format(sql.Identifier(username)),
            (password,)
        )
        logger.info(f"{WHITE}Set password for user: {username}{RESET}")

    def grant_user_permissions(self, username: str):
        self.execute(sql.SQL("ALTER USER {} WITH CREATEDB LOGIN;").format(sql.Identifier(username)))
        logger.info(f"{WHITE}Granted CREATEDB LOGIN to user: {username}{RESET}")

    def drop_user(self, username: str, if_exists: bool = False):
        template = "DROP USER IF EXISTS {};" if if_exists else "DROP USER {};"
        self.execute(sql.SQL(template).format(sql.Identifier(username)))
        logger.info(f"{WHITE}Dropped user: {username}{RESET}")

    def create_database(self, database_name: str):
        self.execute(sql.SQL("CREATE DATABASE {};").format(sql.Identifier(database_name)))
        logger.info(f"{WHITE}Created database: {database_name}{RESET}")

    def drop_database(self, database_name: str, if_exists: bool = False):
        template = "DROP DATABASE IF EXISTS {};" if if_exists else "DROP DATABASE {};"
        self.execute(sql.SQL(template).format(sql.Identifier(database_name)))
        logger.info(f"{WHITE}Dropped database: {database_name}{RESET}")

    def set_database_owner(self, database_name: str, owner: str):
        self.execute(
            sql.SQL("ALTER DATABASE {} OWNER TO {};").format(sql.Identifier(database_name), sql.Identifier(owner))
        )
        logger.info(f"{WHITE}Set owner of database {database_name} to {owner}{RESET}")


# ============================================================================
# RECONCILIATION ENGINE
# ============================================================================

class UserDatabaseReconciler:
    """
    Applies one lifecycle event to a user/database pair.

    The reconciler holds no state between events: every call resolves its own
    credentials, opens its own sessions and closes them before returning or
    raising. It never retries; the caller re-runs the event on failure.
    """

    def __init__(self, secret_client: Optional[SecretClient] = None,
                 session_factory: Callable[..., DatabaseSession] = DatabaseSession):
        self.secret_client = secret_client or SecretClient()
        self.session_factory = session_factory

    def reconcile(self, request: ReconciliationRequest) -> str:
        """
        Bring the database in line with the request

        Args:
            request: Validated lifecycle event

        Returns:
            Identity token of the managed resource
        """
        handlers = {
            RequestType.CREATE: self.handle_create,
            RequestType.UPDATE: self.handle_update,
            RequestType.DELETE: self.handle_delete,
        }
        return handlers[request.request_type](request)

    def _admin_session(self, spec: ResourceSpec) -> DatabaseSession:
        return self.session_factory(self.secret_client, spec.admin_secret, spec.host, spec.port,
                                    Config.ADMIN_DATABASE)

    def _user_session(self, spec: ResourceSpec) -> DatabaseSession:
        # The target database may not exist yet, so the user also connects to the maintenance database
        return self.session_factory(self.secret_client, spec.user_secret, spec.host, spec.port,
                                    Config.ADMIN_DATABASE)

    @staticmethod
    def _check_collision(admin: Credentials, user: Credentials):
        if admin.username == user.username:
            raise CollisionError(f"Cannot manage user {user.username}: it is the admin user")

    @staticmethod
    def _check_identity(request: ReconciliationRequest, username: str):
        spec = request.spec
        if not identity_matches(request.identity_token, spec.host, spec.database_name, username):
            actual = compute_identity(spec.host, spec.database_name, username)
            raise IdentityError(
                f"Cannot change database name or username: "
                f"resource is {request.identity_token}, event describes {actual}"
            )

    def handle_create(self, request: ReconciliationRequest) -> str:
        spec = request.spec
        policy = spec.on_create_if_exists
        logger.info(f"Handling create for database {spec.database_name} on {spec.host}")

        with ExitStack() as stack:
            admin = stack.enter_context(self._admin_session(spec))
            user = stack.enter_context(self._user_session(spec))

            user_credentials = user.get_credentials()
            admin_credentials = admin.get_credentials()
            self._check_collision(admin_credentials, user_credentials)
            username = user_credentials.username

            logger.info(f"Creating user {username} and database {spec.database_name} "
                        f"(onCreateIfExists={policy.value})")

            try:
                admin.create_user(username, user_credentials.password)
            except psycopg2.Error as e:
                if classify_error(e) is not ErrorKind.DUPLICATE_USER or policy is OnCreateIfExists.FAIL:
                    raise
                if policy is OnCreateIfExists.ADOPT:
                    logger.info(f"{YELLOW}User {username} already exists, adopting{RESET}")
                    admin.set_user_password(username, user_credentials.password)
                    admin.grant_user_permissions(username)
                else:
                    logger.info(f"{YELLOW}User {username} already exists, deleting and recreating{RESET}")
                    # Only the managed database is released; anything else the user owns makes DROP USER fail
                    admin.drop_database(spec.database_name, if_exists=True)
                    admin.drop_user(username)
                    admin.create_user(username, user_credentials.password)

            try:
                user.create_database(spec.database_name)
            except psycopg2.Error as e:
                kind = classify_error(e)
                logger.warning(f"Error creating database {spec.database_name} ({kind.name}, code={e.pgcode}): {e}")
                if kind is not ErrorKind.DUPLICATE_DATABASE or policy is OnCreateIfExists.FAIL:
                    raise
                if policy is OnCreateIfExists.ADOPT:
                    logger.info(f"{YELLOW}Database {spec.database_name} already exists, adopting{RESET}")
                    admin.set_database_owner(spec.database_name, username)
                else:
                    logger.info(f"{YELLOW}Database {spec.database_name} already exists, "
                                f"deleting and recreating{RESET}")
                    admin.drop_database(spec.database_name)
                    user.create_database(spec.database_name)

        token = compute_identity(spec.host, spec.database_name, username)
        logger.info(f"{GREEN}Create complete: {token}{RESET}")
        return token

    def handle_update(self, request: ReconciliationRequest) -> str:
        spec = request.spec
        logger.info(f"Handling update for {request.identity_token}")

        with ExitStack() as stack:
            user = stack.enter_context(self._user_session(spec))
            # Opened lazily: connects only if an enabled axis issues a statement
            admin = stack.enter_context(self._admin_session(spec))

            user_credentials = user.get_credentials()
            username = user_credentials.username
            self._check_identity(request, username)

            if spec.on_update_if_user_does_not_exist is OnMissing.CREATE:
                logger.info(f"Creating user {username} if it does not exist")
                try:
                    admin.create_user(username, user_credentials.password)
                except psycopg2.Error as e:
                    if classify_error(e) is not ErrorKind.DUPLICATE_USER:
                        raise
                    logger.info(f"User {username} already exists, doing nothing")
            else:
                logger.info(f"Not creating user {username} if it does not exist")

            if spec.on_update_set_user_password is Apply.ALWAYS:
                admin.set_user_password(username, user_credentials.password)
            else:
                logger.info(f"Not setting password for user {username}")

            if spec.on_update_set_user_permissions is Apply.ALWAYS:
                admin.grant_user_permissions(username)
            else:
                logger.info(f"Not setting permissions for user {username}")

            if spec.on_update_if_database_does_not_exist is OnMissing.CREATE:
                logger.info(f"Creating database {spec.database_name} if it does not exist")
                try:
                    user.create_database(spec.database_name)
                except psycopg2.Error as e:
                    if classify_error(e) is not ErrorKind.DUPLICATE_DATABASE:
                        raise
                    logger.info(f"Database {spec.database_name} already exists, doing nothing")
            else:
                logger.info(f"Not creating database {spec.database_name} if it does not exist")

            if spec.on_update_set_database_ownership is Apply.ALWAYS:
                admin.set_database_owner(spec.database_name, username)
            else:
                logger.info(f"Not setting ownership of database {spec.database_name}")

        logger.info(f"{GREEN}Update complete: {request.identity_token}{RESET}")
        return request.identity_token

    def handle_delete(self, request: ReconciliationRequest) -> str:
        spec = request.spec
        logger.info(f"Handling delete for {request.identity_token}")

        if spec.on_delete is OnDelete.RETAIN:
            logger.info(f"Retaining user and database {spec.database_name}")
            return request.identity_token

        with ExitStack() as stack:
            admin = stack.enter_context(self._admin_session(spec))
            user = stack.enter_context(self._user_session(spec))

            user_credentials = user.get_credentials()
            admin_credentials = admin.get_credentials()
            self._check_collision(admin_credentials, user_credentials)
            self._check_identity(request, user_credentials.username)

            logger.info(f"Dropping database {spec.database_name} if it exists")
            admin.drop_database(spec.database_name, if_exists=True)

            logger.info(f"Dropping user {user_credentials.username} if it exists")
            admin.drop_user(user_credentials.username, if_exists=True)

        logger.info(f"{GREEN}Delete complete: {request.identity_token}{RESET}")
        return request.identity_token


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def read_event_text(path: Optional[str]) -> str:
    if not path or path == "-":
        return sys.stdin.read()
    with open(path, 'r') as f:
        return f.read()


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Reconcile a PostgreSQL user and database")
    parser.add_argument("event", nargs="?", help="Event document (YAML or JSON), stdin when omitted")
    parser.add_argument("--log-level", default=None, type=str.upper, choices=LOG_LEVELS,
                        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    args = parser.parse_args(argv)

    if args.log_level:
        logging.getLogger().setLevel(args.log_level)

    try:
        request = ReconciliationRequest.from_event(load_event(read_event_text(args.event)))
        token = UserDatabaseReconciler().reconcile(request)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, aborting")
        return 130
    except Exception as e:
        logger.critical(f"{RED}Fatal error: {e}{RESET}", exc_info=True)
        return 1

    print(json.dumps({"identityToken": token}))
    return 0


if __name__ == "__main__":
    sys.exit(main())

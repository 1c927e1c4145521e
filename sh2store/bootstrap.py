"""Idempotent bootstrap of the store's singleton rows.

- exactly one client identity (EC P-384 keypair + user id)
- exactly one local remote
- exactly one default session

Each ``ensure_*`` runs its check-then-insert inside one write transaction,
so concurrent callers cannot both insert. ``bootstrap_store`` runs all
three in a single transaction; server startup treats any error as fatal.
"""

import logging
import uuid
from typing import Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import BaseModel

from sh2store import host
from sh2store.database import Database, TxWrap
from sh2store.errors import CorruptStoreError, StoreError
from sh2store.models import (
    DEFAULT_SESSION_NAME,
    LOCAL_REMOTE_ALIAS,
    REMOTE_TYPE_SSH,
    RemoteTarget,
    Session,
    UserData,
)
from sh2store.store import (
    get_remote_by_id_tx,
    get_session_by_name_tx,
    insert_remote_tx,
    insert_session_with_name_tx,
)

logger = logging.getLogger(__name__)


class BootstrapResult(BaseModel):
    user_data: UserData
    local_remote: RemoteTarget
    default_session: Session


# ------------------------------------------------------------------
# Identity
# ------------------------------------------------------------------


def _create_user_data(tx: TxWrap) -> str:
    user_id = str(uuid.uuid4())
    private_key = ec.generate_private_key(ec.SECP384R1())
    pk_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    tx.execute(
        "INSERT INTO client (user_id, user_public_key_bytes, user_private_key_bytes) VALUES (?, ?, ?)",
        (user_id, pub_bytes, pk_bytes),
    )
    logger.info("[db] created new userid[%s] with public/private keypair", user_id)
    return user_id


def _ensure_user_data_tx(tx: TxWrap) -> UserData:
    count = tx.get_int("SELECT count(*) FROM client")
    if count > 1:
        raise CorruptStoreError(f"invalid client database, multiple ({count}) rows in client table")
    if count == 0:
        _create_user_data(tx)
    user_data = tx.get_model(UserData, "SELECT * FROM client")
    if user_data is None:
        raise CorruptStoreError("invalid client data")
    return user_data


def _parse_user_data(user_data: UserData) -> UserData:
    """Load the stored key bytes into key objects."""
    if not user_data.user_id:
        raise CorruptStoreError("invalid client data (no userid)")
    if not user_data.user_private_key_bytes or not user_data.user_public_key_bytes:
        raise CorruptStoreError("invalid client data (no public/private keypair)")
    try:
        private_key = serialization.load_der_private_key(
            user_data.user_private_key_bytes, password=None
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CorruptStoreError(f"invalid client data, cannot parse private key: {exc}") from exc
    if not isinstance(private_key, ec.EllipticCurvePrivateKey):
        raise CorruptStoreError(
            f"invalid client data, wrong private key type: {type(private_key).__name__}"
        )
    try:
        public_key = serialization.load_der_public_key(user_data.user_public_key_bytes)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CorruptStoreError(f"invalid client data, cannot parse public key: {exc}") from exc
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise CorruptStoreError(
            f"invalid client data, wrong public key type: {type(public_key).__name__}"
        )
    return user_data.model_copy(
        update={"user_private_key": private_key, "user_public_key": public_key}
    )


def ensure_user_data(db: Database) -> UserData:
    """Return the client identity, creating it on first use.

    Raises:
        CorruptStoreError: If more than one identity row exists or the
            stored key material cannot be parsed.
    """
    return _parse_user_data(db.with_tx(_ensure_user_data_tx))


# ------------------------------------------------------------------
# Local remote
# ------------------------------------------------------------------


def _local_remote_id() -> str:
    try:
        return host.get_remote_id()
    except (OSError, ValueError) as exc:
        raise StoreError(f"getting local remoteid: {exc}") from exc


def _ensure_local_remote_tx(tx: TxWrap, remote_id: str) -> RemoteTarget:
    remote = get_remote_by_id_tx(tx, remote_id)
    if remote is not None:
        return remote
    try:
        host_name = host.get_hostname()
    except OSError as exc:
        raise StoreError(f"getting hostname: {exc}") from exc
    try:
        user_name = host.get_current_user()
    except (OSError, KeyError) as exc:
        raise StoreError(f"getting user: {exc}") from exc
    local_remote = RemoteTarget(
        remote_id=remote_id,
        remote_type=REMOTE_TYPE_SSH,
        remote_alias=LOCAL_REMOTE_ALIAS,
        remote_canonical_name=f"{user_name}@{host_name}",
        remote_sudo=False,
        remote_user=user_name,
        remote_host=host_name,
        auto_connect=True,
    )
    insert_remote_tx(tx, local_remote)
    logger.info("[db] added remote '%s', id=%s", local_remote.get_name(), local_remote.remote_id)
    return local_remote


def ensure_local_remote(db: Database) -> RemoteTarget:
    remote_id = _local_remote_id()
    return db.with_tx(lambda tx: _ensure_local_remote_tx(tx, remote_id))


# ------------------------------------------------------------------
# Default session
# ------------------------------------------------------------------


def _ensure_default_session_tx(tx: TxWrap) -> Session:
    session: Optional[Session] = get_session_by_name_tx(tx, DEFAULT_SESSION_NAME)
    if session is not None:
        return session
    insert_session_with_name_tx(tx, DEFAULT_SESSION_NAME, activate=True)
    session = get_session_by_name_tx(tx, DEFAULT_SESSION_NAME)
    if session is None:
        raise CorruptStoreError("default session missing after insert")
    return session


def ensure_default_session(db: Database) -> Session:
    return db.with_tx(_ensure_default_session_tx)


# ------------------------------------------------------------------
# Startup
# ------------------------------------------------------------------


def bootstrap_store(db: Database) -> BootstrapResult:
    """Ensure identity, local remote and default session in one transaction."""
    remote_id = _local_remote_id()

    def _bootstrap(tx: TxWrap) -> BootstrapResult:
        return BootstrapResult(
            user_data=_ensure_user_data_tx(tx),
            local_remote=_ensure_local_remote_tx(tx, remote_id),
            default_session=_ensure_default_session_tx(tx),
        )

    result = db.with_tx(_bootstrap)
    return result.model_copy(update={"user_data": _parse_user_data(result.user_data)})

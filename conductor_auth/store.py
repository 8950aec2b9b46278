"""Credential Store.

Encrypts per-tool secrets under a single master key and owns that key's
lifecycle (load, generate, rotate).
"""

import asyncio
import base64
import hashlib
import json
import time
from datetime import timedelta
from typing import Any

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, or_, select, update

from conductor_auth.crypto import decrypt_with_key, encrypt_with_key, generate_master_key
from conductor_auth.keyfile import (
    commit_staged_key,
    discard_staged_key,
    load_master_key,
    save_master_key,
    stage_master_key,
    staged_path,
)
from conductor_auth.schemas import (
    AUTH_PAYLOADS,
    ApiKeyData,
    AuthTestResult,
    AuthType,
    BasicAuthData,
    BearerTokenData,
    CredentialData,
    CredentialRecord,
    CredentialStats,
    CredentialSummary,
    OAuthData,
    RotationResult,
)
from conductor_config.settings import Settings
from conductor_core.exceptions import (
    ConfigurationError,
    CredentialDecryptionError,
    NotFoundError,
    UnsupportedAuthTypeError,
    ValidationError,
)
from conductor_memory.models import Credential, Tool, utcnow
from conductor_obs.logging import get_logger

logger = get_logger(__name__)


def key_id_for(master_key: str) -> str:
    return "master:" + hashlib.sha256(master_key.encode("utf-8")).hexdigest()[:12]


def parse_auth_type(auth_type: AuthType | str) -> AuthType:
    """Coerce a tag to AuthType.

    Raises:
        UnsupportedAuthTypeError: tag is not one of the four supported types
    """
    try:
        return AuthType(auth_type)
    except ValueError:
        raise UnsupportedAuthTypeError(
            f"Unsupported auth type: {auth_type}", auth_type=str(auth_type)
        ) from None


def parse_credential_data(auth_type: AuthType | str, data: Any) -> CredentialData:
    """Validate `data` against the payload model of `auth_type`.

    Raises:
        UnsupportedAuthTypeError: unknown tag
        ValidationError: payload shape does not match the auth type
    """
    auth_type = parse_auth_type(auth_type)
    model = AUTH_PAYLOADS[auth_type]
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'data'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid {auth_type.value} credential data", errors=errors
        ) from e


def build_auth_headers(auth_type: AuthType | str, data: Any) -> dict[str, str]:
    """Build the HTTP header(s) for a credential payload.

    Args:
        auth_type: api_key, bearer, basic or oauth
        data: Payload model or raw dict for that auth type

    Returns:
        Header map, e.g. {"Authorization": "Bearer <token>"}

    Raises:
        UnsupportedAuthTypeError: unknown auth type
    """
    payload = parse_credential_data(auth_type, data)

    if isinstance(payload, ApiKeyData):
        return {payload.header: payload.api_key}
    if isinstance(payload, BearerTokenData):
        return {"Authorization": f"Bearer {payload.token}"}
    if isinstance(payload, BasicAuthData):
        raw = f"{payload.username}:{payload.password}".encode("utf-8")
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}
    if isinstance(payload, OAuthData):
        return {"Authorization": f"{payload.token_type} {payload.access_token}"}

    raise UnsupportedAuthTypeError(f"Unsupported auth type: {auth_type}")


class CredentialStore:
    """Encrypted credential storage.

    All payloads are encrypted under one in-memory master key. Rotation holds
    the store lock for the whole re-encryption transaction, so store/retrieve
    never observe a half-rotated key.
    """

    build_auth_headers = staticmethod(build_auth_headers)

    def __init__(
        self,
        session_factory,
        settings: Settings | None = None,
        config_store=None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize credential store.

        Args:
            session_factory: async_sessionmaker instance
            settings: Settings (key path, derivation rounds, cleanup policy)
            config_store: Optional ConfigurationStore for key metadata
            http_client: Optional client used by test_credentials
        """
        self.session_factory = session_factory
        self.settings = settings or Settings()
        self.config_store = config_store
        self.http_client = http_client
        self.key_path = self.settings.credential_key_path
        self.rounds = self.settings.KEY_DERIVATION_ROUNDS
        self._master_key: str | None = None
        self._key_id: str | None = None
        self._lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._master_key is not None

    @property
    def master_key_id(self) -> str | None:
        return self._key_id

    # ------------------------------------------------------------------------
    # KEY LIFECYCLE
    # ------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load or generate the master key, then purge long-expired rows.

        Raises:
            ConfigurationError: key file exists but cannot be unwrapped
        """
        async with self._lock:
            if staged_path(self.key_path).exists():
                await self._recover_staged_key()

            master_key = load_master_key(self.key_path)
            created = master_key is None
            if created:
                master_key = generate_master_key()
                save_master_key(self.key_path, master_key)
                logger.info("master_key_generated", path=str(self.key_path))

            self._master_key = master_key
            self._key_id = key_id_for(master_key)

        if created:
            await self._record_key_metadata(rotated=False)

        try:
            await self.cleanup_expired_credentials()
        except Exception as e:
            logger.warning("credential_cleanup_failed", error=str(e))

    async def _recover_staged_key(self) -> None:
        """Finish or roll back a rotation interrupted before the file swap."""
        staged_key = load_master_key(staged_path(self.key_path))
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(Credential)
                .where(Credential.encryption_key_id == key_id_for(staged_key))
            )
            in_use = result.scalar_one()

        if in_use:
            commit_staged_key(self.key_path)
            logger.warning("master_key_rotation_recovered", credentials=in_use)
        else:
            discard_staged_key(self.key_path)
            logger.warning("master_key_rotation_rolled_back")

    def _require_key(self) -> str:
        if self._master_key is None:
            raise ConfigurationError("Credential store is not initialized")
        return self._master_key

    async def _record_key_metadata(self, rotated: bool) -> None:
        if self.config_store is None:
            return
        try:
            await self.config_store.set(
                "security.master_key_id", self._key_id, category="security"
            )
            if rotated:
                await self.config_store.set(
                    "security.master_key_rotated_at",
                    utcnow().isoformat(),
                    category="security",
                )
        except Exception as e:
            logger.warning("master_key_metadata_failed", error=str(e))

    def _decrypt_row(self, row: Credential) -> bytes:
        if row.encryption_key_id != self._key_id:
            raise CredentialDecryptionError(
                "Credential was encrypted under a different master key",
                credential_id=row.id,
                key_id=row.encryption_key_id,
            )
        return decrypt_with_key(row.encrypted_data, self._require_key(), self.rounds)

    async def rotate_master_key(self) -> RotationResult:
        """Re-encrypt every credential under a freshly generated key.

        The new key is staged on disk, the re-encryption runs in one
        transaction, and the live key file is swapped only after commit.
        Rows that fail to decrypt keep their old ciphertext and are reported
        in `errors`.
        """
        result = RotationResult()

        async with self._lock:
            self._require_key()
            new_key = generate_master_key()
            new_key_id = key_id_for(new_key)
            stage_master_key(self.key_path, new_key)

            try:
                async with self.session_factory.begin() as session:
                    rows = (await session.execute(select(Credential))).scalars().all()
                    now = utcnow()
                    for row in rows:
                        try:
                            plaintext = self._decrypt_row(row)
                        except CredentialDecryptionError as e:
                            result.errors.append(f"{row.id}: {e.message}")
                            continue
                        row.encrypted_data = encrypt_with_key(plaintext, new_key, self.rounds)
                        row.encryption_key_id = new_key_id
                        row.updated_at = now
                        result.reencrypted += 1
            except BaseException:
                discard_staged_key(self.key_path)
                raise

            commit_staged_key(self.key_path)
            self._master_key = new_key
            self._key_id = new_key_id

        logger.info(
            "master_key_rotated",
            reencrypted=result.reencrypted,
            errors=len(result.errors),
        )
        await self._record_key_metadata(rotated=True)
        return result

    # ------------------------------------------------------------------------
    # CREDENTIAL OPERATIONS
    # ------------------------------------------------------------------------

    async def store(
        self,
        tool_id: str,
        auth_type: AuthType | str,
        data: Any,
        expires_at=None,
    ) -> CredentialRecord:
        """Encrypt and persist a credential for a tool.

        Args:
            tool_id: Tool the credential authenticates against
            auth_type: api_key, bearer, basic or oauth
            data: Payload matching the auth type
            expires_at: Optional naive-UTC expiry

        Raises:
            UnsupportedAuthTypeError, ValidationError, NotFoundError
        """
        auth_type = parse_auth_type(auth_type)
        payload = parse_credential_data(auth_type, data)
        plaintext = json.dumps(payload.model_dump(by_alias=True, exclude_none=True))

        async with self._lock:
            master_key = self._require_key()
            async with self.session_factory.begin() as session:
                if await session.get(Tool, tool_id) is None:
                    raise NotFoundError(f"Tool not found: {tool_id}", tool_id=tool_id)

                row = Credential(
                    tool_id=tool_id,
                    auth_type=auth_type.value,
                    encrypted_data=encrypt_with_key(
                        plaintext.encode("utf-8"), master_key, self.rounds
                    ),
                    encryption_key_id=self._key_id,
                    expires_at=expires_at,
                    usage_count=0,
                )
                session.add(row)
                await session.flush()
                record = CredentialRecord.model_validate(row)

        logger.info("credential_stored", tool_id=tool_id, auth_type=auth_type.value)
        return record

    async def retrieve(
        self, tool_id: str
    ) -> tuple[CredentialRecord, CredentialData] | None:
        """Decrypt the newest non-expired credential for a tool.

        Returns:
            (record, payload) or None when the tool has no usable credential

        Raises:
            CredentialDecryptionError: stored payload cannot be decrypted
        """
        now = utcnow()
        async with self._lock:
            self._require_key()
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Credential)
                    .where(Credential.tool_id == tool_id)
                    .where(or_(Credential.expires_at.is_(None), Credential.expires_at > now))
                    .order_by(Credential.created_at.desc())
                    .limit(1)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return None
                plaintext = self._decrypt_row(row)

        try:
            payload = parse_credential_data(row.auth_type, json.loads(plaintext))
        except (ValueError, ValidationError) as e:
            raise CredentialDecryptionError(
                "Decrypted credential payload is malformed", credential_id=row.id
            ) from e

        try:
            async with self.session_factory.begin() as session:
                await session.execute(
                    update(Credential)
                    .where(Credential.id == row.id)
                    .values(usage_count=Credential.usage_count + 1, last_used=now)
                )
            row.usage_count = (row.usage_count or 0) + 1
            row.last_used = now
        except Exception as e:
            logger.warning("credential_usage_update_failed", credential_id=row.id, error=str(e))

        return CredentialRecord.model_validate(row), payload

    async def remove(self, tool_id: str) -> bool:
        """Delete every credential of a tool."""
        async with self.session_factory.begin() as session:
            result = await session.execute(
                delete(Credential).where(Credential.tool_id == tool_id)
            )
            removed = result.rowcount > 0

        if removed:
            logger.info("credentials_removed", tool_id=tool_id, count=result.rowcount)
        return removed

    async def get_auth_headers(self, tool_id: str) -> tuple[str, dict[str, str]] | None:
        """Resolve a tool's credential into (credential_id, headers)."""
        resolved = await self.retrieve(tool_id)
        if resolved is None:
            return None
        record, payload = resolved
        return record.id, build_auth_headers(record.auth_type, payload)

    # ------------------------------------------------------------------------
    # MAINTENANCE AND READ MODELS
    # ------------------------------------------------------------------------

    async def cleanup_expired_credentials(self) -> int:
        """Purge credentials expired longer than CREDENTIAL_CLEANUP_DAYS ago."""
        threshold = utcnow() - timedelta(days=self.settings.CREDENTIAL_CLEANUP_DAYS)
        async with self.session_factory.begin() as session:
            result = await session.execute(
                delete(Credential).where(Credential.expires_at < threshold)
            )
        if result.rowcount:
            logger.info("expired_credentials_purged", count=result.rowcount)
        return result.rowcount

    async def list_credentials(self, tool_id: str | None = None) -> list[CredentialSummary]:
        now = utcnow()
        soon = now + timedelta(days=self.settings.CREDENTIAL_EXPIRING_SOON_DAYS)

        async with self.session_factory() as session:
            stmt = select(Credential).order_by(Credential.created_at.desc())
            if tool_id:
                stmt = stmt.where(Credential.tool_id == tool_id)
            rows = (await session.execute(stmt)).scalars().all()

        summaries = []
        for row in rows:
            summary = CredentialSummary.model_validate(row)
            if row.expires_at is not None:
                summary.is_expired = row.expires_at <= now
                summary.is_expiring_soon = now < row.expires_at <= soon
            summaries.append(summary)
        return summaries

    async def get_stats(self) -> CredentialStats:
        summaries = await self.list_credentials()
        stats = CredentialStats(total=len(summaries))
        for summary in summaries:
            key = summary.auth_type.value
            stats.by_auth_type[key] = stats.by_auth_type.get(key, 0) + 1
            stats.expired += summary.is_expired
            stats.expiring_soon += summary.is_expiring_soon
        if summaries:
            stats.average_usage = sum(s.usage_count for s in summaries) / len(summaries)
        return stats

    async def test_credentials(self, tool_id: str, endpoint: str) -> AuthTestResult:
        """Probe `<endpoint>/health` with the tool's credential."""
        resolved = await self.get_auth_headers(tool_id)
        if resolved is None:
            return AuthTestResult(success=False, error="No credentials found for tool")
        credential_id, headers = resolved

        url = endpoint.rstrip("/") + "/health"
        client = self.http_client or httpx.AsyncClient()
        start = time.perf_counter()
        try:
            response = await client.get(
                url, headers=headers, timeout=self.settings.CREDENTIAL_TEST_TIMEOUT
            )
            elapsed = (time.perf_counter() - start) * 1000
            success = response.status_code < 400
            return AuthTestResult(
                success=success,
                status_code=response.status_code,
                response_time_ms=elapsed,
                error=None if success else f"HTTP {response.status_code}",
                details={"credential_id": credential_id},
            )
        except httpx.TimeoutException:
            return AuthTestResult(
                success=False,
                response_time_ms=(time.perf_counter() - start) * 1000,
                error=f"Authentication test timed out after {self.settings.CREDENTIAL_TEST_TIMEOUT}s",
            )
        except httpx.HTTPError as e:
            return AuthTestResult(
                success=False,
                response_time_ms=(time.perf_counter() - start) * 1000,
                error=str(e) or e.__class__.__name__,
            )
        finally:
            if client is not self.http_client:
                await client.aclose()

"""
jwksync Key Store.

An async key-value store split into named partitions, one of which is
encrypted and holds private keys only. Supports memory, Redis and HTTP
(key-value map management API) backends, plus a partition-aware wrapper
that enforces the secrets/non-secrets contract.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional
from urllib.parse import quote

import httpx
from cryptography.fernet import Fernet, InvalidToken

from jwksync.errors import StoreReadError, StoreWriteError
from jwksync.naming import EntryKind, EntryName

logger = logging.getLogger(__name__)


def escape_newlines(value: str) -> str:
    """Render a multi-line value (e.g. PEM) on one line for logs."""
    return value.replace("\r\n", "\\n").replace("\r", "\\n").replace("\n", "\\n")


class RemovalResult(str, Enum):
    """Outcome of a best-effort entry removal."""

    REMOVED = "removed"
    ABSENT = "absent"
    FAILED = "failed"

    @property
    def ok(self) -> bool:
        """True when the entry is gone (removed now or never there)."""
        return self is not RemovalResult.FAILED


class KeyStoreInterface(ABC):
    """Abstract interface for partitioned key-value store backends."""

    @abstractmethod
    async def ensure_partition(self, name: str, encrypted: bool = False) -> None:
        """Create the partition if missing. Idempotent."""
        pass

    @abstractmethod
    async def list_partitions(self) -> Dict[str, bool]:
        """Return a mapping of partition name to its encrypted flag."""
        pass

    @abstractmethod
    async def put(self, partition: str, key: str, value: str) -> None:
        """Create or overwrite an entry."""
        pass

    @abstractmethod
    async def get(self, partition: str, key: Optional[str] = None) -> Dict[str, str]:
        """Return one entry (or all entries when key is omitted) as a dict."""
        pass

    @abstractmethod
    async def remove_entry(self, partition: str, key: str) -> RemovalResult:
        """Remove an entry. Never raises."""
        pass

    async def is_encrypted(self, partition: str) -> bool:
        """Check whether a partition was created encrypted."""
        partitions = await self.list_partitions()
        if partition not in partitions:
            raise StoreReadError(f"Partition does not exist: {partition}", partition=partition)
        return partitions[partition]

    def _check_encryption(self, name: str, existing: bool, requested: bool) -> None:
        if existing != requested:
            raise StoreWriteError(
                f"Partition {name} exists with encrypted={existing}, requested encrypted={requested}",
                partition=name,
            )


class MemoryKeyStore(KeyStoreInterface):
    """
    In-memory partitioned store for testing and local runs.

    Entries keep insertion order; overwriting an entry keeps its position.

    Example:
        >>> store = MemoryKeyStore()
        >>> await store.ensure_partition("secrets", encrypted=True)
        >>> await store.put("secrets", "private__rsa__abc", pem)
    """

    def __init__(self):
        self._partitions: Dict[str, Dict[str, str]] = {}
        self._encrypted: Dict[str, bool] = {}
        self._lock = asyncio.Lock()

    async def ensure_partition(self, name: str, encrypted: bool = False) -> None:
        async with self._lock:
            if name in self._partitions:
                self._check_encryption(name, self._encrypted[name], encrypted)
                return
            self._partitions[name] = {}
            self._encrypted[name] = encrypted
            logger.info(f"Created partition {name} (encrypted={encrypted})")

    async def list_partitions(self) -> Dict[str, bool]:
        async with self._lock:
            return dict(self._encrypted)

    async def put(self, partition: str, key: str, value: str) -> None:
        async with self._lock:
            if partition not in self._partitions:
                raise StoreWriteError(
                    f"Partition does not exist: {partition}", partition=partition, key=key
                )
            self._partitions[partition][key] = value

    async def get(self, partition: str, key: Optional[str] = None) -> Dict[str, str]:
        async with self._lock:
            if partition not in self._partitions:
                raise StoreReadError(
                    f"Partition does not exist: {partition}", partition=partition, key=key
                )
            entries = self._partitions[partition]
            if key is None:
                return dict(entries)
            return {key: entries[key]} if key in entries else {}

    async def remove_entry(self, partition: str, key: str) -> RemovalResult:
        async with self._lock:
            entries = self._partitions.get(partition)
            if entries is None or key not in entries:
                return RemovalResult.ABSENT
            del entries[key]
            return RemovalResult.REMOVED


class RedisKeyStore(KeyStoreInterface):
    """
    Redis-backed partitioned store for shared deployments.

    Each partition is a hash; a registry hash records which partitions exist
    and whether they are encrypted. Values written to encrypted partitions
    are sealed with Fernet, so a Fernet key is required to create or use one.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> store = RedisKeyStore(client, fernet_key=Fernet.generate_key())
    """

    def __init__(self, redis_client, fernet_key: Optional[bytes] = None, key_prefix: str = "jwksync:"):
        """
        Initialize Redis store.

        Args:
            redis_client: An async Redis client (redis.asyncio.Redis).
            fernet_key: Key for sealing values in encrypted partitions.
            key_prefix: Prefix for all Redis keys.
        """
        self._redis = redis_client
        self._fernet = Fernet(fernet_key) if fernet_key else None
        self._prefix = key_prefix
        self._registry_key = f"{key_prefix}partitions"

    def _key(self, partition: str) -> str:
        """Generate the hash key for a partition."""
        return f"{self._prefix}kvm:{partition}"

    @staticmethod
    def _text(value) -> str:
        return value.decode("utf-8") if isinstance(value, bytes) else value

    async def _encrypted_flag(self, partition: str) -> Optional[bool]:
        flag = await self._redis.hget(self._registry_key, partition)
        if flag is None:
            return None
        return self._text(flag) == "1"

    def _require_fernet(self, partition: str) -> Fernet:
        if self._fernet is None:
            raise StoreWriteError(
                f"Partition {partition} is encrypted but no Fernet key is configured",
                partition=partition,
            )
        return self._fernet

    async def ensure_partition(self, name: str, encrypted: bool = False) -> None:
        try:
            existing = await self._encrypted_flag(name)
            if existing is not None:
                self._check_encryption(name, existing, encrypted)
                return
            if encrypted:
                self._require_fernet(name)
            await self._redis.hset(self._registry_key, name, "1" if encrypted else "0")
            logger.info(f"Created partition {name} (encrypted={encrypted})")
        except StoreWriteError:
            raise
        except Exception as e:
            logger.error(f"Redis partition error: {e}")
            raise StoreWriteError(f"Cannot create partition {name}: {e}", partition=name) from e

    async def list_partitions(self) -> Dict[str, bool]:
        try:
            registry = await self._redis.hgetall(self._registry_key)
        except Exception as e:
            raise StoreReadError(f"Cannot list partitions: {e}") from e
        return {self._text(name): self._text(flag) == "1" for name, flag in registry.items()}

    async def put(self, partition: str, key: str, value: str) -> None:
        try:
            encrypted = await self._encrypted_flag(partition)
            if encrypted is None:
                raise StoreWriteError(
                    f"Partition does not exist: {partition}", partition=partition, key=key
                )
            stored = value
            if encrypted:
                stored = self._require_fernet(partition).encrypt(value.encode("utf-8")).decode("ascii")
            await self._redis.hset(self._key(partition), key, stored)
        except StoreWriteError:
            raise
        except Exception as e:
            logger.error(f"Redis put error: {e}")
            raise StoreWriteError(
                f"Cannot write {key} to {partition}: {e}", partition=partition, key=key
            ) from e

    def _open(self, partition: str, key: str, value: str) -> str:
        if self._fernet is None:
            raise StoreReadError(
                f"Partition {partition} is encrypted but no Fernet key is configured",
                partition=partition,
                key=key,
            )
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise StoreReadError(
                f"Cannot decrypt {key} in {partition}", partition=partition, key=key
            ) from e

    async def get(self, partition: str, key: Optional[str] = None) -> Dict[str, str]:
        try:
            encrypted = await self._encrypted_flag(partition)
            if encrypted is None:
                raise StoreReadError(
                    f"Partition does not exist: {partition}", partition=partition, key=key
                )
            if key is None:
                raw = await self._redis.hgetall(self._key(partition))
                entries = {self._text(k): self._text(v) for k, v in raw.items()}
            else:
                value = await self._redis.hget(self._key(partition), key)
                entries = {key: self._text(value)} if value is not None else {}
        except StoreReadError:
            raise
        except Exception as e:
            logger.error(f"Redis get error: {e}")
            raise StoreReadError(f"Cannot read {partition}: {e}", partition=partition, key=key) from e

        if encrypted:
            return {k: self._open(partition, k, v) for k, v in entries.items()}
        return entries

    async def remove_entry(self, partition: str, key: str) -> RemovalResult:
        try:
            deleted = await self._redis.hdel(self._key(partition), key)
        except Exception as e:
            logger.warning(f"Redis remove error for {key} in {partition}: {e}")
            return RemovalResult.FAILED
        return RemovalResult.REMOVED if deleted > 0 else RemovalResult.ABSENT


class HTTPKeyStore(KeyStoreInterface):
    """
    Store backed by a key-value map management API.

    Speaks the Apigee-style layout:

        GET    {base}/environments/{env}/keyvaluemaps
        POST   {base}/environments/{env}/keyvaluemaps
        GET    {base}/environments/{env}/keyvaluemaps/{map}
        POST   {base}/environments/{env}/keyvaluemaps/{map}/entries[/{name}]
        DELETE {base}/environments/{env}/keyvaluemaps/{map}/entries/{name}

    Authentication is the caller's concern: pass a configured
    ``httpx.AsyncClient`` or a bearer token.

    Example:
        >>> async with HTTPKeyStore(base_url, "test", token=token) as store:
        ...     await store.ensure_partition("secrets", encrypted=True)
    """

    def __init__(
        self,
        base_url: str,
        environment: str,
        client: Optional[httpx.AsyncClient] = None,
        token: Optional[str] = None,
        http_timeout: float = 10.0,
    ):
        self._base = f"{base_url.rstrip('/')}/environments/{quote(environment, safe='')}/keyvaluemaps"
        self._client = client
        self._owns_client = client is None
        self._token = token
        self._timeout = http_timeout

    async def __aenter__(self):
        if self._client is None:
            headers = {"accept": "application/json"}
            if self._token:
                headers["authorization"] = f"Bearer {self._token}"
            self._client = httpx.AsyncClient(timeout=self._timeout, headers=headers)
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("HTTPKeyStore must be used as an async context manager")
        return self._client

    def _url(self, *parts: str) -> str:
        return "/".join([self._base] + [quote(p, safe="") for p in parts])

    async def _request(self, method: str, url: str, error_cls, partition=None, key=None, **kwargs):
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise error_cls(f"{method} {url} failed: {e}", partition=partition, key=key) from e
        logger.debug(f"{method} {url} ==> {response.status_code}")
        return response

    async def _read_map(self, partition: str) -> dict:
        response = await self._request("GET", self._url(partition), StoreReadError, partition)
        if response.status_code == 404:
            raise StoreReadError(f"Partition does not exist: {partition}", partition=partition)
        if not response.is_success:
            raise StoreReadError(
                f"Reading {partition} returned {response.status_code}", partition=partition
            )
        try:
            document = response.json()
        except ValueError as e:
            raise StoreReadError(f"Malformed response for {partition}", partition=partition) from e
        if not isinstance(document, dict):
            raise StoreReadError(f"Malformed response for {partition}", partition=partition)
        return document

    async def _partition_names(self, error_cls, partition: Optional[str] = None) -> List[str]:
        response = await self._request("GET", self._base, error_cls, partition)
        if not response.is_success:
            raise error_cls(
                f"Listing partitions returned {response.status_code}", partition=partition
            )
        try:
            names = response.json()
        except ValueError as e:
            raise error_cls("Malformed partition listing", partition=partition) from e
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise error_cls("Malformed partition listing", partition=partition)
        return names

    async def list_partitions(self) -> Dict[str, bool]:
        partitions = {}
        for name in await self._partition_names(StoreReadError):
            partitions[name] = bool((await self._read_map(name)).get("encrypted", False))
        return partitions

    async def is_encrypted(self, partition: str) -> bool:
        return bool((await self._read_map(partition)).get("encrypted", False))

    async def ensure_partition(self, name: str, encrypted: bool = False) -> None:
        if name in await self._partition_names(StoreWriteError, name):
            self._check_encryption(name, await self.is_encrypted(name), encrypted)
            return

        response = await self._request(
            "POST",
            self._base,
            StoreWriteError,
            name,
            json={"name": name, "encrypted": encrypted, "entry": []},
        )
        if not response.is_success:
            raise StoreWriteError(
                f"Creating partition {name} returned {response.status_code}", partition=name
            )
        logger.info(f"Created partition {name} (encrypted={encrypted})")

    async def put(self, partition: str, key: str, value: str) -> None:
        body = {"name": key, "value": value}
        # Update first; the API answers 404 when the entry does not exist yet
        response = await self._request(
            "POST", self._url(partition, "entries", key), StoreWriteError, partition, key, json=body
        )
        if response.status_code == 404:
            response = await self._request(
                "POST", self._url(partition, "entries"), StoreWriteError, partition, key, json=body
            )
        if not response.is_success:
            raise StoreWriteError(
                f"Writing {key} to {partition} returned {response.status_code}",
                partition=partition,
                key=key,
            )

    async def get(self, partition: str, key: Optional[str] = None) -> Dict[str, str]:
        document = await self._read_map(partition)
        try:
            entries = {e["name"]: e.get("value", "") for e in document.get("entry") or []}
        except (KeyError, TypeError, AttributeError) as e:
            raise StoreReadError(
                f"Malformed entry list for {partition}", partition=partition, key=key
            ) from e
        if key is None:
            return entries
        return {key: entries[key]} if key in entries else {}

    async def remove_entry(self, partition: str, key: str) -> RemovalResult:
        try:
            response = await self._request(
                "DELETE", self._url(partition, "entries", key), StoreWriteError, partition, key
            )
        except StoreWriteError as e:
            logger.warning(f"Removing {key} from {partition} failed: {e}")
            return RemovalResult.FAILED
        if response.status_code == 404:
            return RemovalResult.ABSENT
        if not response.is_success:
            logger.warning(f"Removing {key} from {partition} returned {response.status_code}")
            return RemovalResult.FAILED
        return RemovalResult.REMOVED


class PartitionedKeyStore:
    """
    Binds a backend to the secrets and non-secrets partitions.

    Enforces that private key entries are written to the encrypted secrets
    partition and nowhere else, and that the secrets partition holds
    nothing but private keys.

    Example:
        >>> store = PartitionedKeyStore(MemoryKeyStore())
        >>> await store.ensure()
        >>> await store.put_secret(private_key_entry(kid), pem)
    """

    def __init__(
        self,
        backend: KeyStoreInterface,
        secrets_partition: str = "secrets",
        nonsecrets_partition: str = "settings",
    ):
        if secrets_partition == nonsecrets_partition:
            raise ValueError("Secrets and non-secrets partitions must differ")
        self.backend = backend
        self.secrets_partition = secrets_partition
        self.nonsecrets_partition = nonsecrets_partition

    async def ensure(self) -> None:
        """Create both partitions if missing; secrets is created encrypted."""
        await self.backend.ensure_partition(self.secrets_partition, encrypted=True)
        await self.backend.ensure_partition(self.nonsecrets_partition, encrypted=False)

    async def put_secret(self, key: str, value: str) -> None:
        name = EntryName.decode(key)
        if name is None or name.kind is not EntryKind.PRIVATE:
            raise StoreWriteError(
                f"Only private key entries belong in {self.secrets_partition}",
                partition=self.secrets_partition,
                key=key,
            )
        if not await self.backend.is_encrypted(self.secrets_partition):
            raise StoreWriteError(
                f"Refusing to write private key material to unencrypted partition "
                f"{self.secrets_partition}",
                partition=self.secrets_partition,
                key=key,
            )
        await self.backend.put(self.secrets_partition, key, value)

    async def put_public(self, key: str, value: str) -> None:
        name = EntryName.decode(key)
        if name is not None and name.kind is EntryKind.PRIVATE:
            raise StoreWriteError(
                f"Refusing to write private key entry {key} to {self.nonsecrets_partition}",
                partition=self.nonsecrets_partition,
                key=key,
            )
        await self.backend.put(self.nonsecrets_partition, key, value)

    async def get_secret(self, key: str) -> Optional[str]:
        return (await self.backend.get(self.secrets_partition, key)).get(key)

    async def get_public(self, key: str) -> Optional[str]:
        return (await self.backend.get(self.nonsecrets_partition, key)).get(key)

    async def public_entries(self) -> Dict[str, str]:
        return await self.backend.get(self.nonsecrets_partition)

    async def remove_public(self, key: str) -> RemovalResult:
        result = await self.backend.remove_entry(self.nonsecrets_partition, key)
        if result is RemovalResult.FAILED:
            logger.warning(f"Could not remove {key} from {self.nonsecrets_partition}")
        return result

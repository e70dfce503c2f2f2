"""
Exchange Authentication Module

Produces the request headers the CLOB expects, on top of py-clob-client:
- L2: API-key HMAC headers (create_level_2_headers)
- Builder: attribution headers signed locally or by a remote signer

L1 wallet authentication happens inside ClobClient when API credentials
are derived. The signer choice is made once, when the signer is built.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import httpx
from eth_account import Account
from loguru import logger
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds, RequestArgs
from py_clob_client.headers.headers import (
    create_level_2_headers,
    enrich_l2_headers_with_builder_headers,
)
from py_clob_client.signer import Signer
from py_clob_client.signing.hmac import build_hmac_signature

from .config import Settings
from .exceptions import AuthenticationError, ConfigurationError


def normalize_private_key(private_key: str) -> str:
    return private_key if private_key.startswith("0x") else f"0x{private_key}"


def signature_hex(signature: bytes) -> str:
    return "0x" + bytes(signature).hex()


def credentials_complete(creds: ApiCreds) -> bool:
    return all((value or "").strip() for value in (creds.api_key, creds.api_secret, creds.api_passphrase))


class RequestSigner(ABC):
    """Produces authentication headers for one HTTP request"""

    @property
    def api_key(self) -> Optional[str]:
        """API key that owns orders signed through this signer"""
        return None

    @abstractmethod
    async def sign(self, method: str, path: str, body: str = "") -> Dict[str, str]:
        ...


class L2HeaderSigner(RequestSigner):
    """API-key HMAC headers for authenticated CLOB endpoints"""

    def __init__(self, private_key: str, chain_id: int, credentials: ApiCreds):
        if not credentials_complete(credentials):
            raise AuthenticationError("Incomplete API credentials")
        self._signer = Signer(normalize_private_key(private_key), chain_id)
        self.credentials = credentials

    @property
    def address(self) -> str:
        return self._signer.address()

    @property
    def api_key(self) -> Optional[str]:
        return self.credentials.api_key

    async def sign(self, method, path, body=""):
        request = RequestArgs(method=method, request_path=path, body=body or None)
        return create_level_2_headers(self._signer, self.credentials, request)


class LocalBuilderSigner(RequestSigner):
    """Builder attribution headers signed with local builder credentials"""

    def __init__(self, credentials: ApiCreds):
        self.credentials = credentials

    async def sign(self, method, path, body=""):
        ts = int(time.time())
        return {
            "POLY_BUILDER_API_KEY": self.credentials.api_key,
            "POLY_BUILDER_PASSPHRASE": self.credentials.api_passphrase,
            "POLY_BUILDER_SIGNATURE": build_hmac_signature(
                self.credentials.api_secret, ts, method, path, body or None
            ),
            "POLY_BUILDER_TIMESTAMP": str(ts),
        }


class RemoteBuilderSigner(RequestSigner):
    """Builder attribution headers delegated to a remote signing service"""

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 10.0):
        self.url = url
        self.token = token
        self.timeout = timeout

    async def sign(self, method, path, body=""):
        payload = {"method": method, "path": path, "body": body}
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Remote builder signer failed: {e}")
            raise AuthenticationError(f"Remote builder signer failed: {e}") from e

        if not isinstance(data, dict) or "POLY_BUILDER_SIGNATURE" not in data:
            raise AuthenticationError("Remote builder signer returned no signature")

        return {k: str(v) for k, v in data.items()}


class BuilderAttributedSigner(RequestSigner):
    """L2 headers with builder headers injected alongside"""

    def __init__(self, l2_signer: RequestSigner, builder_signer: RequestSigner):
        self.l2_signer = l2_signer
        self.builder_signer = builder_signer

    @property
    def api_key(self) -> Optional[str]:
        return self.l2_signer.api_key

    async def sign(self, method, path, body=""):
        headers = await self.l2_signer.sign(method, path, body)
        builder_headers = await self.builder_signer.sign(method, path, body)
        return enrich_l2_headers_with_builder_headers(headers, builder_headers)


def select_builder_signer(settings: Settings) -> Optional[RequestSigner]:
    """
    Pick the builder signer from configuration

    Local credentials win when both local and remote are configured.
    Returns None when builder attribution is not configured.
    """
    local = ApiCreds(
        api_key=settings.builder_api_key,
        api_secret=settings.builder_secret,
        api_passphrase=settings.builder_passphrase,
    )
    any_local = any(value.strip() for value in (local.api_key, local.api_secret, local.api_passphrase))

    if any_local:
        if not credentials_complete(local):
            raise ConfigurationError("Invalid local builder credentials")
        return LocalBuilderSigner(local)

    url = settings.builder_signer_url.strip()
    if url:
        if not url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Invalid remote builder signer url: {url}")
        token = settings.builder_signer_token
        if token is not None and not token:
            raise ConfigurationError("Invalid remote builder signer token")
        return RemoteBuilderSigner(url, token)

    return None


def load_api_credentials(path: str) -> ApiCreds:
    """Read {key, secret, passphrase} from a JSON credential file"""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read credential file {path}: {e}") from e

    try:
        return ApiCreds(
            api_key=data["key"],
            api_secret=data["secret"],
            api_passphrase=data.get("passphrase", ""),
        )
    except (KeyError, TypeError) as e:
        raise ConfigurationError(f"Credential file {path} is missing {e}") from e


async def derive_api_credentials(host: str, private_key: str, chain_id: int) -> ApiCreds:
    """Create or derive the API key triple with an L1-authenticated call"""
    client = ClobClient(host, key=normalize_private_key(private_key), chain_id=chain_id)

    try:
        return await asyncio.to_thread(client.create_or_derive_api_creds)
    except Exception as e:
        raise AuthenticationError(f"Failed to derive API credentials: {e}") from e


async def create_request_signer(settings: Settings) -> RequestSigner:
    """
    Build the signer for authenticated exchange requests

    Credentials come from POLYMARKET_CREDENTIAL_PATH when the file exists,
    otherwise they are derived from the private key.
    """
    if not settings.private_key:
        raise AuthenticationError("No private key configured")

    try:
        Account.from_key(normalize_private_key(settings.private_key))
    except Exception as e:
        raise AuthenticationError(f"Invalid private key: {e}") from e

    path = settings.polymarket_credential_path
    if path and Path(path).exists():
        credentials = load_api_credentials(path)
        logger.info(f"Loaded API credentials from {path}")
    else:
        credentials = await derive_api_credentials(
            settings.clob_http_url, settings.private_key, settings.chain_id
        )
        logger.info("Derived API credentials from private key")

    signer: RequestSigner = L2HeaderSigner(settings.private_key, settings.chain_id, credentials)

    builder = select_builder_signer(settings)
    if builder is not None:
        logger.info(f"Builder attribution enabled ({type(builder).__name__})")
        signer = BuilderAttributedSigner(signer, builder)

    return signer

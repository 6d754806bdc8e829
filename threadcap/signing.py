"""HTTP-signature helpers and the signing-aware fetcher wrapper."""
from __future__ import annotations

import base64
import hashlib
import logging
import threading
from email.utils import formatdate
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Set
from urllib.parse import urlparse

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .fetcher import FetchResponse, Fetcher


logger = logging.getLogger(__name__)

SIGNABLE_MEDIA_TYPES = ("application/activity+json", "application/ld+json")


class SigningMode(str, Enum):
    ALWAYS = "always"
    WHEN_NEEDED = "when-needed"


Signer = Callable[..., Dict[str, str]]


def load_private_key_pem(pem_text: str | bytes) -> rsa.RSAPrivateKey:
    data = pem_text.encode("utf-8") if isinstance(pem_text, str) else pem_text
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("Expected an RSA private key")
    return key


def load_private_key_file(path: Path | str) -> rsa.RSAPrivateKey:
    return load_private_key_pem(Path(path).read_bytes())


def compute_http_signature_headers(
    *,
    method: str,
    url: str,
    key_id: str,
    private_key: rsa.RSAPrivateKey,
    body: Optional[str] = None,
    date: Optional[str] = None,
) -> Dict[str, str]:
    """Compute ``signature`` and ``date`` (plus ``digest`` when a body is sent).

    Signs ``(request-target) host date [digest]`` with RSASSA-PKCS1-v1_5 SHA-256.
    """

    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"
    date = date or formatdate(usegmt=True)
    lines = [
        f"(request-target): {method.lower()} {path}",
        f"host: {parsed.netloc}",
        f"date: {date}",
    ]
    names = ["(request-target)", "host", "date"]
    result: Dict[str, str] = {"date": date}
    if body is not None:
        digest = "SHA-256=" + base64.b64encode(hashlib.sha256(body.encode("utf-8")).digest()).decode("ascii")
        lines.append(f"digest: {digest}")
        names.append("digest")
        result["digest"] = digest
    string_to_sign = "\n".join(lines)
    signature_bytes = private_key.sign(
        string_to_sign.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256()
    )
    signature = base64.b64encode(signature_bytes).decode("ascii")
    result["signature"] = (
        f'keyId="{key_id}",algorithm="rsa-sha256",headers="{" ".join(names)}",signature="{signature}"'
    )
    return result


def is_signing_candidate(headers: Mapping[str, str] | None) -> bool:
    accept = ""
    for name, value in (headers or {}).items():
        if name.lower() == "accept":
            accept = value.lower()
    return any(media_type in accept for media_type in SIGNABLE_MEDIA_TYPES)


class SigningAwareFetcher:
    """Signs structured-data GETs, either always or after a host answers 401."""

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        key_id: str,
        private_key: rsa.RSAPrivateKey,
        mode: SigningMode | str = SigningMode.WHEN_NEEDED,
        signer: Signer = compute_http_signature_headers,
    ) -> None:
        self._fetcher = fetcher
        self.key_id = key_id
        self._private_key = private_key
        self.mode = SigningMode(mode)
        self._signer = signer
        self._lock = threading.Lock()
        self._hosts_requiring_signing: Set[str] = set()

    @property
    def hosts_requiring_signing(self) -> Set[str]:
        with self._lock:
            return set(self._hosts_requiring_signing)

    def __call__(self, url: str, headers: Mapping[str, str] | None = None) -> FetchResponse:
        if not is_signing_candidate(headers):
            return self._fetcher(url, headers=headers)
        host = urlparse(url).netloc
        if self.mode is SigningMode.ALWAYS or self._requires_signing(host):
            return self._fetch_signed(url, headers)
        response = self._fetcher(url, headers=headers)
        if response.status != 401:
            return response
        with self._lock:
            self._hosts_requiring_signing.add(host)
        logger.warning("%s answered 401 to an unsigned request; signing requests to it from now on", host)
        return self._fetch_signed(url, headers)

    def _requires_signing(self, host: str) -> bool:
        with self._lock:
            return host in self._hosts_requiring_signing

    def _fetch_signed(self, url: str, headers: Mapping[str, str] | None) -> FetchResponse:
        signed = dict(headers or {})
        computed = self._signer(
            method="GET",
            url=url,
            key_id=self.key_id,
            private_key=self._private_key,
            body=None,
        )
        signed["host"] = urlparse(url).netloc
        signed["date"] = computed["date"]
        signed["signature"] = computed["signature"]
        return self._fetcher(url, headers=signed)


__all__ = [
    "SIGNABLE_MEDIA_TYPES",
    "SigningAwareFetcher",
    "SigningMode",
    "compute_http_signature_headers",
    "is_signing_candidate",
    "load_private_key_file",
    "load_private_key_pem",
]

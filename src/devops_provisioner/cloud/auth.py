"""Profile resolution and request signing."""

from __future__ import annotations

import base64
import configparser
import hashlib
import logging
from abc import ABC, abstractmethod
from email.utils import formatdate
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from ..errors import PreconditionError

logger = logging.getLogger(__name__)

_REQUIRED_KEYS = ("user", "tenancy", "fingerprint", "key_file", "region")


class AuthenticationProvider(ABC):
    """Opaque credentials forwarded to the Resource Directory and Factory."""

    @property
    @abstractmethod
    def profile(self) -> str: ...

    @property
    @abstractmethod
    def region(self) -> str: ...

    @property
    @abstractmethod
    def tenancy(self) -> str: ...

    @abstractmethod
    def request_auth(self) -> requests.auth.AuthBase:
        """Auth hook attached to every outgoing HTTP request."""


class RequestSigner(requests.auth.AuthBase):
    """Signs requests with an RSA-SHA256 HTTP signature (version 1)."""

    def __init__(self, key_id: str, private_key) -> None:
        self.key_id = key_id
        self.private_key = private_key

    def __call__(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        url = urlparse(request.url)
        method = (request.method or "GET").lower()
        if "date" not in request.headers:
            request.headers["date"] = formatdate(usegmt=True)
        request.headers["host"] = url.netloc

        signed_headers: List[str] = ["date", "(request-target)", "host"]
        if method in ("post", "put", "patch"):
            body = request.body or b""
            if isinstance(body, str):
                body = body.encode("utf-8")
            if "content-type" not in request.headers:
                request.headers["content-type"] = "application/json"
            request.headers["content-length"] = str(len(body))
            request.headers["x-content-sha256"] = base64.b64encode(
                hashlib.sha256(body).digest()
            ).decode("ascii")
            signed_headers += ["content-length", "content-type", "x-content-sha256"]

        target = url.path + (f"?{url.query}" if url.query else "")
        lines = []
        for header in signed_headers:
            if header == "(request-target)":
                lines.append(f"(request-target): {method} {target}")
            else:
                lines.append(f"{header}: {request.headers[header]}")
        signature = self.private_key.sign(
            "\n".join(lines).encode("utf-8"), padding.PKCS1v15(), hashes.SHA256()
        )
        request.headers["authorization"] = (
            'Signature version="1",'
            f'keyId="{self.key_id}",'
            'algorithm="rsa-sha256",'
            f'headers="{" ".join(signed_headers)}",'
            f'signature="{base64.b64encode(signature).decode("ascii")}"'
        )
        return request


class ConfigFileAuthentication(AuthenticationProvider):
    """API key credentials read from an INI profile file."""

    def __init__(
        self,
        config_file: str = "~/.oci/config",
        profile: str = "DEFAULT",
        region: Optional[str] = None,
    ) -> None:
        path = Path(config_file).expanduser()
        if not path.is_file():
            raise PreconditionError(f"Profile configuration file not found: {path}")

        parser = configparser.ConfigParser(interpolation=None)
        parser.read(path, encoding="utf-8")
        if profile != "DEFAULT" and not parser.has_section(profile):
            raise PreconditionError(f"Profile '{profile}' not found in {path}")
        section = parser[profile]

        missing = [key for key in _REQUIRED_KEYS if not section.get(key)]
        if region and "region" in missing:
            missing.remove("region")
        if missing:
            raise PreconditionError(
                f"Profile '{profile}' in {path} is missing: {', '.join(missing)}"
            )

        self._profile = profile
        self._region = region or section["region"]
        self._tenancy = section["tenancy"]
        self.user = section["user"]
        self.fingerprint = section["fingerprint"]
        self.key_file = Path(section["key_file"]).expanduser()
        self._pass_phrase = section.get("pass_phrase")
        self._signer: Optional[RequestSigner] = None
        logger.info("Using profile %s (region %s)", self._profile, self._region)

    @property
    def profile(self) -> str:
        return self._profile

    @property
    def region(self) -> str:
        return self._region

    @property
    def tenancy(self) -> str:
        return self._tenancy

    def request_auth(self) -> requests.auth.AuthBase:
        if self._signer is None:
            try:
                key_data = self.key_file.read_bytes()
            except OSError as exc:
                raise PreconditionError(f"Cannot read API key {self.key_file}: {exc}") from exc
            password = self._pass_phrase.encode("utf-8") if self._pass_phrase else None
            private_key = serialization.load_pem_private_key(key_data, password=password)
            key_id = f"{self._tenancy}/{self.user}/{self.fingerprint}"
            self._signer = RequestSigner(key_id, private_key)
        return self._signer

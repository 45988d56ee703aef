from __future__ import annotations

import http
import re
from dataclasses import dataclass, field
from typing import Iterator

import requests
import urllib3

from image_save.constants import CHUNK_SIZE, REQUEST_TIMEOUT, logger
from image_save.errors import TransportError
from image_save.manifest import ACCEPTED_MEDIA_TYPES, guess_media_type
from image_save.reference import ImageReference

GENERIC_CONTENT_TYPES = ("", "application/json", "text/plain")


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """scheme and params of a WWW-Authenticate header"""
    scheme, _, params = header.strip().partition(" ")
    return scheme.lower(), dict(re.findall(r'(\w+)="([^"]*)"', params))


@dataclass
class RegistryAuth:
    base_url: str
    repository: str
    scheme: str = ""
    realm: str = ""
    service: str = ""
    username: str = ""
    password: str = field(default="", repr=False)
    token: str = field(default="", repr=False)

    @classmethod
    def init(
        cls,
        session: requests.Session,
        base_url: str,
        repository: str,
        username: str = "",
        password: str = "",
    ) -> RegistryAuth:
        """probe the registry's /v2/ endpoint for its auth challenge"""
        resp = session.get(f"{base_url}/v2/", timeout=REQUEST_TIMEOUT)
        scheme = realm = service = ""
        if resp.status_code == http.HTTPStatus.UNAUTHORIZED:
            scheme, params = parse_challenge(resp.headers.get("WWW-Authenticate", ""))
            realm = params.get("realm", "")
            service = params.get("service", "")
            logger.debug(f"registry requests {scheme} auth ({realm=}, {service=})")

        return cls(
            base_url=base_url,
            repository=repository,
            scheme=scheme,
            realm=realm,
            service=service,
            username=username,
            password=password,
        )

    @property
    def credentials(self) -> tuple[str, str] | None:
        if self.username and self.password:
            return (self.username, self.password)
        return None

    def authenticate(self, session: requests.Session):
        if self.scheme != "bearer" or not self.realm:
            return
        resp = session.get(
            self.realm,
            params={
                "service": self.service,
                "scope": f"repository:{self.repository}:pull",
            },
            auth=self.credentials,
            timeout=REQUEST_TIMEOUT,
        )
        if resp.status_code != http.HTTPStatus.OK:
            raise TransportError(
                f"HTTP {resp.status_code}: {resp.reason} -- "
                f"unable to get a token for {self.repository} from {self.realm}"
            )
        payload = resp.json()
        self.token = payload.get("token") or payload.get("access_token") or ""

    def apply(self, session: requests.Session):
        """configure session so its requests are authenticated"""
        if self.scheme == "basic":
            session.auth = self.credentials
        elif self.scheme == "bearer":
            if not self.token:
                self.authenticate(session)
            session.headers["Authorization"] = f"Bearer {self.token}"


class RegistrySource:
    """Registry HTTP API V2 access to a single image reference"""

    def __init__(
        self,
        reference: ImageReference,
        session: requests.Session,
        base_url: str,
        auth: RegistryAuth | None = None,
    ):
        self.reference = reference
        self.session = session
        self.base_url = base_url
        self.auth = auth

    @property
    def repo_url(self) -> str:
        return f"{self.base_url}/v2/{self.reference.path}"

    def get_manifest(self, digest: str | None = None) -> tuple[bytes, str]:
        """raw manifest and its media type. `None` digest is the reference's tag"""
        ref = digest or self.reference.tag
        try:
            resp = self.session.get(
                f"{self.repo_url}/manifests/{ref}",
                headers={"Accept": ", ".join(ACCEPTED_MEDIA_TYPES)},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise TransportError(f"get manifest {ref} error: {exc}") from exc

        if resp.status_code == http.HTTPStatus.UNAUTHORIZED:
            raise TransportError(
                f"HTTP {resp.status_code}: {resp.reason} -- "
                "This **may** indicate an incorrect image name/registry/tag "
                f"or missing credentials for {self.reference}"
            )
        if resp.status_code == http.HTTPStatus.NOT_FOUND:
            raise TransportError(
                f"HTTP {resp.status_code}: {resp.reason} -- "
                f"manifest {ref} not found for {self.reference}"
            )
        if resp.status_code != http.HTTPStatus.OK:
            raise TransportError(
                f"HTTP {resp.status_code}: {resp.reason} -- {resp.text}"
            )

        raw = resp.content
        media_type = resp.headers.get("Content-Type", "").split(";", 1)[0].strip()
        if media_type in GENERIC_CONTENT_TYPES:
            media_type = guess_media_type(raw)
        logger.debug(f"manifest {ref}: {media_type} ({len(raw)} bytes)")
        return raw, media_type

    def _open_blob(self, digest: str, urls: list[str]) -> requests.Response:
        candidates = [f"{self.repo_url}/blobs/{digest}"] + list(urls)
        resp = None
        for url in candidates:
            try:
                resp = self.session.get(url, stream=True, timeout=REQUEST_TIMEOUT)
            except requests.RequestException as exc:
                raise TransportError(f"get blob {digest} error: {exc}") from exc
            if resp.status_code == http.HTTPStatus.OK:
                return resp
            # layer may be located at a custom URL
            logger.debug(
                f"blob {digest[7:19]} not served by {url}: HTTP {resp.status_code}"
            )
            resp.close()

        status = resp.status_code if resp is not None else "-"
        raise TransportError(f"Cannot download blob {digest[7:19]} [HTTP {status}]")

    def get_blob(
        self, digest: str, urls: list[str] | None = None, size: int = -1
    ) -> tuple[Iterator[bytes], int]:
        """stream of a blob's content and its size (-1 when unknown)"""
        resp = self._open_blob(digest, urls or [])
        content_length = resp.headers.get("Content-Length", "")
        if content_length.isdigit():
            size = int(content_length)

        def iter_chunks() -> Iterator[bytes]:
            try:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        yield chunk
            except requests.RequestException as exc:
                raise TransportError(f"read blob {digest} error: {exc}") from exc
            finally:
                resp.close()

        return iter_chunks(), size


def create_session(insecure: bool = False) -> requests.Session:
    session = requests.Session()
    if insecure:
        session.verify = False
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return session


def open_source(
    reference: ImageReference,
    username: str | None = None,
    password: str | None = None,
    insecure: bool = False,
) -> RegistrySource:
    """RegistrySource for reference, authenticated and ready to fetch from"""
    session = create_session(insecure)
    schemes = ["https", "http"] if insecure else ["https"]

    auth = None
    for index, scheme in enumerate(schemes):
        base_url = f"{scheme}://{reference.registry}"
        try:
            auth = RegistryAuth.init(
                session,
                base_url,
                reference.path,
                username=username or "",
                password=password or "",
            )
            break
        except requests.RequestException as exc:
            if index + 1 < len(schemes):
                logger.debug(f"{base_url} unreachable ({exc}), trying next scheme")
                continue
            raise TransportError(
                f"get image source error: {reference.registry}: {exc}"
            ) from exc

    try:
        auth.apply(session)
    except requests.RequestException as exc:
        raise TransportError(f"authentication error: {exc}") from exc

    return RegistrySource(
        reference=reference, session=session, base_url=auth.base_url, auth=auth
    )

"""Remote repository speaking the OCI distribution HTTP API (v2).

Only what copy and backup need is implemented: manifest and blob
HEAD/GET/PUT, monolithic blob upload, cross-repository mount, tag listing
and referrers (Referrers API with fallback to the referrers tag schema).
On registries without the Referrers API, pushing a manifest that has a
``subject`` also records it in the subject's referrers tag index.
Authentication follows the registry's ``WWW-Authenticate`` challenge:
bearer tokens are requested from the advertised realm, optionally with
basic credentials; basic challenges reuse the same credentials.
"""

from __future__ import annotations

import base64
import logging
import re
import threading
from collections.abc import Callable
from typing import Any
from urllib.parse import urljoin

import requests

from ocireplica.core.digests import compute_digest, split_digest, verify_content
from ocireplica.core.errors import NotFoundError, RegistryError, ReplicaError
from ocireplica.models.descriptors import (
    MANIFEST_MEDIA_TYPES,
    MEDIA_TYPE_IMAGE_INDEX,
    MEDIA_TYPE_IMAGE_MANIFEST,
    Descriptor,
    Index,
    decode_subject,
    is_manifest,
)
from ocireplica.models.references import Reference, RegistryIdentity, is_digest

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ", ".join(sorted(MANIFEST_MEDIA_TYPES))
DEFAULT_USER_AGENT = "ocireplica"
TAG_PAGE_SIZE = 1000

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')
_NEXT_LINK = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Split a ``WWW-Authenticate`` header into scheme and parameters."""
    scheme, _, params = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(params))


class RemoteRepository:
    """One repository on a remote registry.

    Parameters
    ----------
    reference:
        ``registry/repository`` (any tag or digest is ignored).
    plain_http:
        Talk HTTP instead of HTTPS.
    insecure:
        Skip TLS certificate verification.
    username / password:
        Credentials for basic auth or token requests.
    session:
        A ``requests.Session`` (or compatible object) to use.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        reference: Reference | str,
        *,
        plain_http: bool = False,
        insecure: bool = False,
        username: str | None = None,
        password: str | None = None,
        session: Any | None = None,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        if isinstance(reference, str):
            reference = Reference.parse(reference)
        self.reference = reference.with_reference("")
        self._scheme = "http" if plain_http else "https"
        self._credentials = (username, password or "") if username else None
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})
        self._verify = not insecure
        self._auth_lock = threading.Lock()
        self._authorization: str | None = None
        self._referrers_lock = threading.Lock()
        self._referrers_api: bool | None = None

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self._scheme}://{self.reference.registry}/v2/{self.reference.repository}/{path}"

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if self._authorization:
            headers["Authorization"] = self._authorization
        response = self._session.request(
            method, url, headers=headers, timeout=self._timeout, verify=self._verify, **kwargs
        )
        if response.status_code != 401:
            return response

        challenge = response.headers.get("WWW-Authenticate", "")
        if not challenge or not self._authenticate(challenge):
            return response
        headers["Authorization"] = self._authorization
        return self._session.request(
            method, url, headers=headers, timeout=self._timeout, verify=self._verify, **kwargs
        )

    def _authenticate(self, challenge: str) -> bool:
        """Answer an auth challenge.  Returns False when it cannot be met."""
        scheme, params = parse_challenge(challenge)
        with self._auth_lock:
            if scheme == "basic":
                if self._credentials is None:
                    return False
                self._authorization = _basic_header(*self._credentials)
                return True
            if scheme != "bearer" or "realm" not in params:
                return False

            query = {"service": params.get("service", "")}
            scope = params.get("scope") or (
                f"repository:{self.reference.repository}:pull,push"
            )
            query["scope"] = scope
            logger.debug("Requesting token from %s for %s", params["realm"], scope)
            response = self._session.request(
                "GET",
                params["realm"],
                params=query,
                auth=self._credentials,
                timeout=self._timeout,
                verify=self._verify,
            )
            if response.status_code != 200:
                raise RegistryError("GET", params["realm"], response.status_code, _detail(response))
            body = response.json()
            token = body.get("token") or body.get("access_token")
            if not token:
                raise ReplicaError(f"token endpoint {params['realm']} returned no token")
            self._authorization = f"Bearer {token}"
            return True

    def _check(
        self, response: requests.Response, method: str, url: str, *expected: int
    ) -> requests.Response:
        if response.status_code in expected:
            return response
        if response.status_code == 404:
            raise NotFoundError(f"{url}: not found", operation=method.lower())
        raise RegistryError(method, url, response.status_code, _detail(response))

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _node_url(self, desc: Descriptor) -> str:
        kind = "manifests" if is_manifest(desc) else "blobs"
        return self._url(f"{kind}/{desc.digest}")

    def fetch(self, desc: Descriptor) -> bytes:
        url = self._node_url(desc)
        headers = {"Accept": desc.media_type} if is_manifest(desc) else {}
        response = self._check(self._request("GET", url, headers=headers), "GET", url, 200)
        return response.content

    def exists(self, desc: Descriptor) -> bool:
        url = self._node_url(desc)
        headers = {"Accept": desc.media_type} if is_manifest(desc) else {}
        response = self._request("HEAD", url, headers=headers)
        if response.status_code == 404:
            return False
        self._check(response, "HEAD", url, 200)
        return True

    def push(self, desc: Descriptor, data: bytes) -> None:
        verify_content(data, desc.digest, desc.size)
        if not is_manifest(desc):
            self._upload_blob(desc, data, self._url("blobs/uploads/"))
            return
        response = self._put_manifest(desc, data, desc.digest)
        subject, artifact_type = decode_subject(desc, data)
        # a registry that indexes the subject itself says so in OCI-Subject
        if subject is not None and "OCI-Subject" not in response.headers:
            self._index_referrer(subject, desc.model_copy(update={"artifact_type": artifact_type}))

    def _put_manifest(self, desc: Descriptor, data: bytes, reference: str) -> requests.Response:
        url = self._url(f"manifests/{reference}")
        response = self._request(
            "PUT", url, data=data, headers={"Content-Type": desc.media_type}
        )
        return self._check(response, "PUT", url, 200, 201, 202)

    def _has_referrers_api(self, subject: Descriptor) -> bool:
        if self._referrers_api is None:
            url = self._url(f"referrers/{subject.digest}")
            response = self._request("GET", url, headers={"Accept": MEDIA_TYPE_IMAGE_INDEX})
            if response.status_code == 404:
                self._referrers_api = False
            else:
                self._check(response, "GET", url, 200)
                self._referrers_api = True
        return self._referrers_api

    def _index_referrer(self, subject: Descriptor, referrer: Descriptor) -> None:
        """Add *referrer* to the referrers tag index of *subject*.

        Nothing to do when the registry serves the Referrers API.  The
        index is read, extended and written back under the same tag.
        """
        if self._has_referrers_api(subject):
            return
        with self._referrers_lock:
            existing = self._referrers_by_tag(subject)
            if any(d.digest == referrer.digest for d in existing):
                return
            content = Index(
                schema_version=2,
                media_type=MEDIA_TYPE_IMAGE_INDEX,
                manifests=[*existing, referrer],
            ).to_bytes()
            index_desc = Descriptor(
                media_type=MEDIA_TYPE_IMAGE_INDEX, digest=compute_digest(content), size=len(content)
            )
            tag = _referrers_tag(subject)
            logger.debug("Recording referrer %s under tag %s", referrer.digest, tag)
            self._put_manifest(index_desc, content, tag)

    def _upload_blob(self, desc: Descriptor, data: bytes, start_url: str) -> None:
        response = self._check(self._request("POST", start_url), "POST", start_url, 202)
        self._finish_upload(desc, data, response)

    def _finish_upload(self, desc: Descriptor, data: bytes, response: requests.Response) -> None:
        location = response.headers.get("Location")
        if not location:
            raise ReplicaError(f"registry did not return an upload location for {desc.digest}")
        url = urljoin(response.url or self._url(""), location)
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}digest={desc.digest}"
        response = self._request(
            "PUT",
            url,
            data=data,
            headers={"Content-Type": "application/octet-stream", "Content-Length": str(len(data))},
        )
        self._check(response, "PUT", url, 201)

    def mount(
        self,
        desc: Descriptor,
        from_repository: str,
        get_content: Callable[[], bytes] | None = None,
    ) -> None:
        """Mount a blob from *from_repository* on the same registry.

        A 202 answer means the registry declined the mount and opened a
        regular upload instead; it is completed with *get_content*.
        """
        url = self._url(f"blobs/uploads/?mount={desc.digest}&from={from_repository}")
        response = self._request("POST", url)
        if response.status_code == 201:
            return
        self._check(response, "POST", url, 202)
        if get_content is None:
            raise ReplicaError(f"registry declined to mount {desc.digest} and no content was provided")
        self._finish_upload(desc, get_content(), response)

    # ------------------------------------------------------------------
    # Target
    # ------------------------------------------------------------------

    def resolve(self, reference: str) -> Descriptor:
        url = self._url(f"manifests/{reference}")
        response = self._check(
            self._request("HEAD", url, headers={"Accept": MANIFEST_ACCEPT}), "HEAD", url, 200
        )
        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        digest = response.headers.get("Docker-Content-Digest", "")
        size = response.headers.get("Content-Length")
        if not digest or size is None or media_type not in MANIFEST_MEDIA_TYPES:
            return self._resolve_by_get(reference)
        if is_digest(reference) and digest != reference:
            raise ReplicaError(f"registry returned digest {digest} for {reference}")
        return Descriptor(media_type=media_type, digest=digest, size=int(size))

    def _resolve_by_get(self, reference: str) -> Descriptor:
        url = self._url(f"manifests/{reference}")
        response = self._check(
            self._request("GET", url, headers={"Accept": MANIFEST_ACCEPT}), "GET", url, 200
        )
        content = response.content
        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        if media_type not in MANIFEST_MEDIA_TYPES:
            media_type = Index.parse(content).media_type or MEDIA_TYPE_IMAGE_MANIFEST
        digest = response.headers.get("Docker-Content-Digest") or (
            reference if is_digest(reference) else ""
        )
        if not digest:
            digest = compute_digest(content)
        verify_content(content, digest)
        return Descriptor(media_type=media_type, digest=digest, size=len(content))

    def tag(self, desc: Descriptor, reference: str) -> None:
        if not is_manifest(desc):
            raise ReplicaError(f"cannot tag {desc.digest}: {desc.media_type} is not a manifest")
        data = self.fetch(desc)
        verify_content(data, desc.digest, desc.size)
        self._put_manifest(desc, data, reference)

    def tags(self) -> list[str]:
        """List every tag, following ``Link`` pagination."""
        url: str | None = self._url(f"tags/list?n={TAG_PAGE_SIZE}")
        found: list[str] = []
        while url:
            response = self._check(self._request("GET", url), "GET", url, 200)
            found.extend(response.json().get("tags") or [])
            url = _next_page(response)
        return found

    def referrers(self, desc: Descriptor, artifact_type: str = "") -> list[Descriptor]:
        url = self._url(f"referrers/{desc.digest}")
        params = {"artifactType": artifact_type} if artifact_type else None
        response = self._request(
            "GET", url, params=params, headers={"Accept": MEDIA_TYPE_IMAGE_INDEX}
        )
        if response.status_code == 404:
            logger.debug("Referrers API unavailable at %s, using tag schema", url)
            found = self._referrers_by_tag(desc)
            filtered = False
        else:
            self._check(response, "GET", url, 200)
            found = Index.parse(response.content).manifests
            filtered = "artifactType" in response.headers.get("OCI-Filters-Applied", "")
        if artifact_type and not filtered:
            found = [d for d in found if d.artifact_type == artifact_type]
        return found

    def _referrers_by_tag(self, desc: Descriptor) -> list[Descriptor]:
        try:
            index_desc = self.resolve(_referrers_tag(desc))
        except NotFoundError:
            return []
        return Index.parse(self.fetch(index_desc)).manifests

    def host_identity(self) -> RegistryIdentity | None:
        return RegistryIdentity(
            host=self.reference.registry, repository=self.reference.repository
        )

    def __repr__(self) -> str:
        return f"RemoteRepository({self.reference.locator!r})"


def _referrers_tag(desc: Descriptor) -> str:
    algorithm, encoded = split_digest(desc.digest)
    return f"{algorithm}-{encoded}"[:128]


def _basic_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return f"Basic {token}"


def _detail(response: requests.Response) -> str:
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        return response.text[:300] if response.text else ""
    return "; ".join(
        f"{e.get('code', '')}: {e.get('message', '')}".strip(": ") for e in errors
    )


def _next_page(response: requests.Response) -> str | None:
    match = _NEXT_LINK.search(response.headers.get("Link", ""))
    if not match:
        return None
    return urljoin(response.url, match.group(1))

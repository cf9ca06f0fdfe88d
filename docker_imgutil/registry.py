# -*- coding: utf-8 -*-

"""
Minimal client for the registry HTTP API V2, covering what image
backends need: manifests, blobs, deletion and permission probes.
"""

import io
import re
from urllib.parse import urljoin

import docker.auth
import requests

from docker_imgutil import media_types
from docker_imgutil.errors import Error, RegistryError
from docker_imgutil.lib.common import timeout_from_env

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_REGISTRY_API = "registry-1.docker.io"
DEFAULT_TAG = "latest"

_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|[-]*)[a-z0-9]+)*"
_DOMAIN = r"(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*(?::[0-9]+)?"
_REFERENCE = re.compile(
    r"^(?:(?P<domain>%s)/)?(?P<path>%s(?:/%s)*)(?::(?P<tag>[\w][\w.-]{0,127}))?(?:@(?P<digest>sha256:[a-f0-9]{64}))?$"
    % (_DOMAIN, _COMPONENT, _COMPONENT)
)

MANIFEST_ACCEPT = ", ".join(media_types.MANIFEST_TYPES + media_types.INDEX_TYPES)

UNAUTHORIZED_CODES = (401, 403)


class RegistrySetting(object):
    """Per registry host settings"""

    def __init__(self, insecure=False, insecure_skip_verify=False):
        self.insecure = insecure
        self.insecure_skip_verify = insecure_skip_verify

    def __repr__(self):
        return "RegistrySetting(insecure=%s, insecure_skip_verify=%s)" % (
            self.insecure,
            self.insecure_skip_verify,
        )


class Reference(object):
    """
    Parsed image reference.

    Examples:
        - busybox -> index.docker.io/library/busybox:latest
        - localhost:5000/app:v1 -> localhost:5000/app:v1
        - gcr.io/project/image@sha256:abc... -> gcr.io/project/image@sha256:abc...
    """

    def __init__(self, registry, repository, tag=None, digest=None):
        self.registry = registry
        self.repository = repository
        self.tag = tag
        self.digest = digest

    @classmethod
    def parse(cls, name):
        match = _REFERENCE.match(name or "")

        if not match:
            raise Error("could not parse reference: %s" % name)

        domain, path, tag, digest = match.group("domain", "path", "tag", "digest")

        # A first component without a dot, a port and not 'localhost' is
        # a part of the repository path on Docker Hub
        if domain and not (
            "." in domain or ":" in domain or domain == "localhost"
        ):
            path = "%s/%s" % (domain, path)
            domain = None

        if not domain or domain == "docker.io":
            domain = DEFAULT_REGISTRY

            if "/" not in path:
                path = "library/%s" % path

        if not tag and not digest:
            tag = DEFAULT_TAG

        return cls(domain, path, tag, digest)

    @property
    def context(self):
        return "%s/%s" % (self.registry, self.repository)

    @property
    def identifier(self):
        return self.digest or self.tag

    def with_digest(self, digest):
        return Reference(self.registry, self.repository, digest=digest)

    def __str__(self):
        if self.digest:
            return "%s@%s" % (self.context, self.digest)

        return "%s:%s" % (self.context, self.tag)


def registry_setting(registry_settings, reference):
    return (registry_settings or {}).get(reference.registry) or RegistrySetting()


class RegistryClient(object):
    def __init__(
        self, log, registry_settings=None, auth_config=None, session=None, timeout=None
    ):
        self.log = log
        self.registry_settings = dict(registry_settings or {})
        self.auth_config = auth_config
        self.session = session or requests.Session()
        self.timeout = timeout or timeout_from_env("REGISTRY_TIMEOUT")
        self._tokens = {}

    def _base_url(self, reference):
        setting = registry_setting(self.registry_settings, reference)
        host = reference.registry

        if host == DEFAULT_REGISTRY:
            host = DEFAULT_REGISTRY_API

        scheme = "http" if setting.insecure else "https"

        return "%s://%s/v2/%s/" % (scheme, host, reference.repository)

    def _credentials(self, reference):
        if self.auth_config is None:
            self.auth_config = docker.auth.load_config()

        registry = reference.registry

        if registry == DEFAULT_REGISTRY:
            registry = docker.auth.INDEX_NAME

        return docker.auth.resolve_authconfig(self.auth_config, registry)

    def _parse_challenge(self, header):
        scheme, _, params = header.partition(" ")
        challenge = dict(re.findall(r'(\w+)="([^"]*)"', params))

        return scheme.lower(), challenge

    def _authenticate(self, reference, response, actions):
        """Handles the Bearer/Basic auth handshake after a 401 response"""

        header = response.headers.get("WWW-Authenticate")

        if not header:
            return None

        scheme, challenge = self._parse_challenge(header)
        credentials = self._credentials(reference) or {}
        basic = None

        if credentials.get("username"):
            basic = (credentials["username"], credentials.get("password") or "")

        if scheme == "basic":
            return {"auth": basic} if basic else None

        if scheme != "bearer" or "realm" not in challenge:
            return None

        params = {"scope": "repository:%s:%s" % (reference.repository, actions)}

        if challenge.get("service"):
            params["service"] = challenge["service"]

        self.log.debug("Requesting token from %s..." % challenge["realm"])

        token_response = self.session.get(
            challenge["realm"], params=params, auth=basic, timeout=self.timeout
        )

        if token_response.status_code != 200:
            raise RegistryError(
                "could not get token for %s: %s"
                % (reference.context, token_response.status_code),
                token_response.status_code,
            )

        data = token_response.json()
        token = data.get("token") or data.get("access_token")

        return {"headers": {"Authorization": "Bearer %s" % token}}

    def _request(self, method, reference, path, actions="pull", **kwargs):
        setting = registry_setting(self.registry_settings, reference)
        url = urljoin(self._base_url(reference), path)
        key = (reference.context, actions)
        headers = dict(kwargs.pop("headers", {}))
        auth = self._tokens.get(key) or {}

        try:
            response = self.session.request(
                method,
                url,
                headers=dict(headers, **auth.get("headers", {})),
                auth=auth.get("auth"),
                verify=not setting.insecure_skip_verify,
                timeout=self.timeout,
                **kwargs
            )

            if response.status_code == 401:
                auth = self._authenticate(reference, response, actions)

                if auth:
                    self._tokens[key] = auth
                    response = self.session.request(
                        method,
                        url,
                        headers=dict(headers, **auth.get("headers", {})),
                        auth=auth.get("auth"),
                        verify=not setting.insecure_skip_verify,
                        timeout=self.timeout,
                        **kwargs
                    )
        except requests.exceptions.RequestException as e:
            raise RegistryError("%s %s failed: %s" % (method, url, e))

        return response

    def _check(self, response, description, *expected):
        if response.status_code not in expected:
            raise RegistryError(
                "%s failed with status %s" % (description, response.status_code),
                response.status_code,
            )

        return response

    def head_manifest(self, reference):
        response = self._request(
            "HEAD",
            reference,
            "manifests/%s" % reference.identifier,
            headers={"Accept": MANIFEST_ACCEPT},
        )
        self._check(response, "checking manifest of %s" % reference, 200)

        return {
            "mediaType": response.headers.get("Content-Type"),
            "digest": response.headers.get("Docker-Content-Digest"),
            "size": int(response.headers.get("Content-Length") or 0),
        }

    def get_manifest(self, reference):
        """Returns the raw manifest and its media type"""

        self.log.debug("Fetching manifest of %s..." % reference)

        response = self._request(
            "GET",
            reference,
            "manifests/%s" % reference.identifier,
            headers={"Accept": MANIFEST_ACCEPT},
        )
        self._check(response, "fetching manifest of %s" % reference, 200)

        media_type = response.headers.get("Content-Type", "").split(";")[0]

        return response.content, media_type

    def get_blob(self, reference, digest):
        self.log.debug("Fetching blob %s from %s..." % (digest, reference.context))

        response = self._request("GET", reference, "blobs/%s" % digest)
        self._check(response, "fetching blob %s" % digest, 200)

        return io.BytesIO(response.content)

    def blob_exists(self, reference, digest):
        response = self._request(
            "HEAD", reference, "blobs/%s" % digest, actions="pull,push"
        )

        return response.status_code == 200

    def put_blob(self, reference, digest, stream):
        self.log.debug("Uploading blob %s to %s..." % (digest, reference.context))

        response = self._request(
            "POST", reference, "blobs/uploads/", actions="pull,push"
        )
        self._check(response, "starting upload of %s" % digest, 202)

        location = urljoin(
            self._base_url(reference), response.headers.get("Location", "")
        )
        separator = "&" if "?" in location else "?"

        response = self._request(
            "PUT",
            reference,
            "%s%sdigest=%s" % (location, separator, digest),
            actions="pull,push",
            data=stream,
            headers={"Content-Type": "application/octet-stream"},
        )
        self._check(response, "uploading blob %s" % digest, 201)

    def put_manifest(self, reference, raw_manifest, media_type):
        self.log.debug("Uploading manifest to %s..." % reference)

        response = self._request(
            "PUT",
            reference,
            "manifests/%s" % reference.identifier,
            actions="pull,push",
            data=raw_manifest,
            headers={"Content-Type": media_type},
        )
        self._check(response, "uploading manifest to %s" % reference, 201)

    def delete_manifest(self, reference):
        response = self._request(
            "DELETE",
            reference,
            "manifests/%s" % reference.identifier,
            actions="delete",
        )
        self._check(response, "deleting %s" % reference, 202, 200)

    def check_push_permission(self, reference):
        """Starts and cancels a blob upload to see if pushing is allowed"""

        response = self._request(
            "POST", reference, "blobs/uploads/", actions="pull,push"
        )
        self._check(response, "checking push permission for %s" % reference, 202)

        location = response.headers.get("Location")

        if location:
            self._request(
                "DELETE",
                reference,
                urljoin(self._base_url(reference), location),
                actions="pull,push",
            )

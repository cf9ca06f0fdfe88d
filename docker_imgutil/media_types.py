# -*- coding: utf-8 -*-

import enum

from docker_imgutil.errors import Error

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"
OCI_UNCOMPRESSED_LAYER = "application/vnd.oci.image.layer.v1.tar"
OCI_RESTRICTED_LAYER = "application/vnd.oci.image.layer.nondistributable.v1.tar+gzip"
OCI_UNCOMPRESSED_RESTRICTED_LAYER = (
    "application/vnd.oci.image.layer.nondistributable.v1.tar"
)

DOCKER_MANIFEST_SCHEMA2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"
DOCKER_UNCOMPRESSED_LAYER = "application/vnd.docker.image.rootfs.diff.tar"
DOCKER_FOREIGN_LAYER = "application/vnd.docker.image.rootfs.foreign.diff.tar.gzip"
DOCKER_UNCOMPRESSED_FOREIGN_LAYER = (
    "application/vnd.docker.image.rootfs.foreign.diff.tar"
)

INDEX_TYPES = (OCI_INDEX, DOCKER_MANIFEST_LIST)
MANIFEST_TYPES = (OCI_MANIFEST, DOCKER_MANIFEST_SCHEMA2)

# Pairs of equivalent layer media types, (OCI, Docker)
_LAYER_EQUIVALENTS = [
    (OCI_LAYER, DOCKER_LAYER),
    (OCI_UNCOMPRESSED_LAYER, DOCKER_UNCOMPRESSED_LAYER),
    (OCI_RESTRICTED_LAYER, DOCKER_FOREIGN_LAYER),
    (OCI_UNCOMPRESSED_RESTRICTED_LAYER, DOCKER_UNCOMPRESSED_FOREIGN_LAYER),
]


class MediaTypes(enum.Enum):
    """Manifest and config dialect requested for an image"""

    MISSING = "missing"
    OCI = "oci"
    DOCKER = "docker"

    def manifest_type(self):
        if self is MediaTypes.OCI:
            return OCI_MANIFEST
        if self is MediaTypes.DOCKER:
            return DOCKER_MANIFEST_SCHEMA2
        return None

    def config_type(self):
        if self is MediaTypes.OCI:
            return OCI_CONFIG
        if self is MediaTypes.DOCKER:
            return DOCKER_CONFIG
        return None

    def layer_type(self):
        if self is MediaTypes.OCI:
            return OCI_LAYER
        if self is MediaTypes.DOCKER:
            return DOCKER_LAYER
        return None

    def convert_layer_type(self, media_type):
        """
        Returns the equivalent of the given layer media type in this dialect,
        keeping compression and distributability of the original.
        """
        if self is MediaTypes.MISSING:
            return media_type

        for oci_type, docker_type in _LAYER_EQUIVALENTS:
            if media_type in (oci_type, docker_type):
                return oci_type if self is MediaTypes.OCI else docker_type

        raise Error("Unknown layer media type '%s'" % media_type)


def dialect_of(manifest_type):
    if manifest_type in (OCI_MANIFEST, OCI_INDEX):
        return MediaTypes.OCI
    if manifest_type in (DOCKER_MANIFEST_SCHEMA2, DOCKER_MANIFEST_LIST):
        return MediaTypes.DOCKER
    return MediaTypes.MISSING


def media_types_match(image, requested):
    if requested is MediaTypes.MISSING:
        return True

    manifest = image.manifest()

    return (
        manifest.get("mediaType") == requested.manifest_type()
        and manifest["config"]["mediaType"] == requested.config_type()
    )


def override_media_types(image, requested):
    """
    Rewrites the manifest, config and layer media types of the image
    to the requested dialect.

    Returns a new image, the provided one is never modified. All layer
    types are converted before anything is assembled, so an unknown
    layer type fails the whole call.
    """
    if requested is MediaTypes.MISSING:
        return image

    layers = [
        layer.with_media_type(requested.convert_layer_type(layer.media_type))
        for layer in image.layers()
    ]

    return image.with_media_types(
        requested.manifest_type(), requested.config_type(), layers
    )


def normalize(image, requested):
    if media_types_match(image, requested):
        return image

    return override_media_types(image, requested)


def dialect_of_config(config_type):
    if config_type == OCI_CONFIG:
        return MediaTypes.OCI
    if config_type == DOCKER_CONFIG:
        return MediaTypes.DOCKER
    return MediaTypes.MISSING

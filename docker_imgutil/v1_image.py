# -*- coding: utf-8 -*-

import copy
import functools
import json
from collections import OrderedDict

from docker_imgutil import media_types
from docker_imgutil.config import new_config
from docker_imgutil.errors import Error, ValidationError
from docker_imgutil.layer import Layer, append_to_config
from docker_imgutil.lib.common import dump_json, format_date, sha256_digest


class V1Image(object):
    """
    Immutable in-memory image: a config file, an ordered list of layers
    and the media types used to serialize them.

    Every modification returns a new V1Image. Raw manifest and config
    bytes are kept only for images read back from storage, so that their
    digests match the stored ones until the image is modified.
    """

    def __init__(
        self,
        config,
        layers=(),
        manifest_type=media_types.DOCKER_MANIFEST_SCHEMA2,
        config_type=media_types.DOCKER_CONFIG,
        raw_manifest=None,
        raw_config=None,
    ):
        self._config = copy.deepcopy(config)
        self._layers = tuple(layers)
        self._manifest_type = manifest_type
        self._config_type = config_type
        self._raw_manifest = raw_manifest
        self._raw_config = raw_config

    def config_file(self):
        return copy.deepcopy(self._config)

    def raw_config_file(self):
        if self._raw_config is None:
            self._raw_config = dump_json(self._config)[0].encode("utf-8")

        return self._raw_config

    def config_name(self):
        return sha256_digest(self.raw_config_file())

    def layers(self):
        return list(self._layers)

    def media_type(self):
        return self._manifest_type

    def manifest(self):
        if self._raw_manifest is not None:
            return json.loads(self._raw_manifest, object_pairs_hook=OrderedDict)

        raw_config = self.raw_config_file()

        manifest = OrderedDict()
        manifest["schemaVersion"] = 2
        manifest["mediaType"] = self._manifest_type
        manifest["config"] = OrderedDict(
            [
                ("mediaType", self._config_type),
                ("size", len(raw_config)),
                ("digest", sha256_digest(raw_config)),
            ]
        )
        manifest["layers"] = [layer.descriptor() for layer in self._layers]

        return manifest

    def raw_manifest(self):
        if self._raw_manifest is None:
            self._raw_manifest = dump_json(self.manifest())[0].encode("utf-8")

        return self._raw_manifest

    def digest(self):
        return sha256_digest(self.raw_manifest())

    def size(self):
        return len(self.raw_manifest())

    def layer_by_digest(self, digest):
        for layer in self._layers:
            if layer.digest == digest:
                return layer

        return None

    def with_config_file(self, config):
        return V1Image(config, self._layers, self._manifest_type, self._config_type)

    def with_layers(self, config, layers):
        return V1Image(config, layers, self._manifest_type, self._config_type)

    def with_media_types(self, manifest_type, config_type, layers):
        return V1Image(self._config, layers, manifest_type, config_type)

    def with_created_at(self, created):
        config = self.config_file()
        config["created"] = format_date(created)

        return self.with_config_file(config)

    def append_layers(self, layers, created=None):
        config = append_to_config(
            self._config, [layer.diff_id for layer in layers], created
        )

        return V1Image(
            config,
            self._layers + tuple(layers),
            self._manifest_type,
            self._config_type,
        )

    def validate(self):
        """Fast structural validation, content of the layers is not read"""

        manifest = self.manifest()

        if manifest.get("schemaVersion") != 2:
            raise ValidationError(
                "unsupported manifest schema version: %s"
                % manifest.get("schemaVersion")
            )

        if manifest.get("mediaType") not in media_types.MANIFEST_TYPES:
            raise ValidationError(
                "unsupported manifest media type: %s" % manifest.get("mediaType")
            )

        if manifest["config"]["digest"] != self.config_name():
            raise ValidationError(
                "config digest %s does not match manifest %s"
                % (self.config_name(), manifest["config"]["digest"])
            )

        diff_ids = (self._config.get("rootfs") or {}).get("diff_ids") or []

        if len(diff_ids) != len(manifest["layers"]):
            raise ValidationError(
                "config has %s diff ids, manifest has %s layers"
                % (len(diff_ids), len(manifest["layers"]))
            )

        for diff_id, layer in zip(diff_ids, self._layers):
            if layer.diff_id != diff_id:
                raise ValidationError(
                    "layer %s does not match diff id %s in config"
                    % (layer.diff_id, diff_id)
                )

        history = [
            entry
            for entry in self._config.get("history") or []
            if not entry.get("empty_layer", False)
        ]

        if history and len(history) != len(diff_ids):
            raise ValidationError(
                "config has %s non-empty history entries for %s layers"
                % (len(history), len(diff_ids))
            )


class Platform(object):
    def __init__(self, os="linux", architecture="amd64", os_version=None, variant=None):
        self.os = os
        self.architecture = architecture
        self.os_version = os_version
        self.variant = variant

    def __repr__(self):
        return "Platform(%s/%s%s)" % (
            self.os,
            self.architecture,
            "/%s" % self.variant if self.variant else "",
        )

    def matches(self, platform):
        """Checks the 'platform' object of an index entry"""
        if not platform:
            return False

        if platform.get("os") != self.os:
            return False

        if platform.get("architecture") != self.architecture:
            return False

        if self.variant and platform.get("variant") not in (None, self.variant):
            return False

        return True


def select_manifest(index, platform):
    """
    Picks the manifest descriptor matching the platform from an image index.

    An index with a single manifest is used as-is, whatever its platform.
    """
    manifests = index.get("manifests") or []

    if not manifests:
        raise Error("no image manifest found in the index")

    if len(manifests) == 1:
        return manifests[0]

    for manifest in manifests:
        if platform.matches(manifest.get("platform")):
            return manifest

    raise Error("manifest matching platform %r not found" % platform)


def empty_image(platform, requested=media_types.MediaTypes.MISSING):
    if requested is media_types.MediaTypes.MISSING:
        requested = media_types.MediaTypes.DOCKER

    config = new_config(
        os_name=platform.os,
        architecture=platform.architecture,
        os_version=platform.os_version,
        variant=platform.variant,
    )

    return V1Image(
        config,
        manifest_type=requested.manifest_type(),
        config_type=requested.config_type(),
    )


def image_from_raw(raw_manifest, raw_config, blob_opener):
    """
    Creates an image out of a stored manifest and config.

    Layer content is not read, blob_opener(digest) is called lazily
    whenever a layer blob is needed.
    """
    manifest = json.loads(raw_manifest, object_pairs_hook=OrderedDict)
    config = json.loads(raw_config, object_pairs_hook=OrderedDict)

    diff_ids = (config.get("rootfs") or {}).get("diff_ids") or []
    descriptors = manifest.get("layers") or []

    if len(diff_ids) != len(descriptors):
        raise ValidationError(
            "config has %s diff ids, manifest has %s layers"
            % (len(diff_ids), len(descriptors))
        )

    layers = [
        Layer(
            diff_id,
            descriptor["digest"],
            descriptor["size"],
            descriptor["mediaType"],
            functools.partial(blob_opener, descriptor["digest"]),
        )
        for diff_id, descriptor in zip(diff_ids, descriptors)
    ]

    config_type = manifest["config"]["mediaType"]
    manifest_type = manifest.get("mediaType")

    if not manifest_type:
        if media_types.dialect_of_config(config_type) is media_types.MediaTypes.OCI:
            manifest_type = media_types.OCI_MANIFEST
        else:
            manifest_type = media_types.DOCKER_MANIFEST_SCHEMA2

    return V1Image(
        config,
        layers,
        manifest_type,
        config_type,
        raw_manifest=raw_manifest,
        raw_config=raw_config,
    )

# -*- coding: utf-8 -*-

import json
import logging
from collections import OrderedDict
from typing import Dict, Optional

from docker_imgutil import media_types, rebase
from docker_imgutil.errors import Error, RegistryError, ValidationError
from docker_imgutil.identifier import digest_identifier
from docker_imgutil.image import Image
from docker_imgutil.layer import find_layer_with_diff_id, layer_from_file
from docker_imgutil.lib.common import NORMALIZED_DATE_TIME, retry, sha256_digest
from docker_imgutil.media_types import MediaTypes
from docker_imgutil.registry import (
    UNAUTHORIZED_CODES,
    Reference,
    RegistryClient,
    RegistrySetting,
)
from docker_imgutil.save import prepare_config, save_to_destinations
from docker_imgutil.v1_image import (
    Platform,
    V1Image,
    empty_image,
    image_from_raw,
    select_manifest,
)


class RemoteImage(Image):
    """Image stored in a registry"""

    FORMAT = "remote"

    def __init__(
        self,
        log,
        repo_name: str,
        client: Optional[RegistryClient] = None,
        base_image: Optional[str] = None,
        previous_image: Optional[str] = None,
        created_at=None,
        requested_media_types: MediaTypes = MediaTypes.MISSING,
        platform: Optional[Platform] = None,
        registry_settings: Optional[Dict[str, RegistrySetting]] = None,
    ):
        self.log: logging.Logger = log
        self.name: str = repo_name
        self.registry_settings = dict(registry_settings or {})
        self.client = client or RegistryClient(log, self.registry_settings)
        self.platform: Platform = platform or Platform()
        self.created_at = created_at or NORMALIZED_DATE_TIME
        self.prev_layers = ()

        if previous_image:
            previous = self._fetch_image(previous_image)

            if previous is not None:
                self.prev_layers = tuple(previous.layers())

            self.log.debug(
                "Previous image %s has %s layers"
                % (previous_image, len(self.prev_layers))
            )

        image = None

        if base_image:
            image = self._fetch_image(base_image)

            if image is None:
                self.log.debug(
                    "Base image %s not found, starting from an empty image"
                    % base_image
                )

        if image is None:
            image = empty_image(self.platform, requested_media_types)

        # Unless requested otherwise, keep the dialect of the base image
        if requested_media_types is MediaTypes.MISSING:
            requested_media_types = media_types.dialect_of(image.media_type())

        self.requested_media_types: MediaTypes = requested_media_types
        self._image: V1Image = media_types.normalize(
            image, self.requested_media_types
        )

    def _reference(self, name):
        return Reference.parse(name)

    def _fetch_image(self, name):
        """Reads the image from the registry, None if it does not exist"""

        reference = self._reference(name)

        try:
            raw_manifest, media_type = retry(
                self.log,
                "Fetching manifest of %s" % reference,
                self.client.get_manifest,
                reference,
            )
        except RegistryError as e:
            if e.status_code == 404:
                return None
            raise

        if media_type in media_types.INDEX_TYPES:
            index = json.loads(raw_manifest, object_pairs_hook=OrderedDict)
            descriptor = select_manifest(index, self.platform)
            reference = reference.with_digest(descriptor["digest"])
            raw_manifest, media_type = self.client.get_manifest(reference)

        return self._image_from_manifest(reference, raw_manifest)

    def _image_from_manifest(self, reference, raw_manifest):
        manifest = json.loads(raw_manifest, object_pairs_hook=OrderedDict)
        raw_config = self.client.get_blob(
            reference, manifest["config"]["digest"]
        ).read()

        def opener(digest):
            return self.client.get_blob(reference, digest)

        return image_from_raw(raw_manifest, raw_config, opener)

    def _read_config(self):
        return self._image.config_file()

    def _write_config(self, config):
        self._image = self._image.with_config_file(config)

    def _layers(self):
        return self._image.layers()

    def underlying_image(self):
        return self._image

    def manifest_size(self):
        return self._image.size()

    def identifier(self):
        reference = self._reference(self.name)

        return digest_identifier(reference.context, self._image.digest())

    def found(self):
        try:
            self._head()
        except Error:
            return False

        return True

    def _head(self):
        reference = self._reference(self.name)

        return retry(
            self.log,
            "Checking manifest of %s" % reference,
            self.client.head_manifest,
            reference,
        )

    def validate(self):
        """Raises ValidationError when the stored image is not valid"""

        reference = self._reference(self.name)
        raw_manifest, media_type = self.client.get_manifest(reference)

        if media_type in media_types.INDEX_TYPES:
            index = json.loads(raw_manifest)

            for descriptor in index.get("manifests") or []:
                if not descriptor.get("digest") or not descriptor.get("mediaType"):
                    raise ValidationError(
                        "invalid manifest descriptor in index of '%s'" % self.name
                    )

                self._validate_manifest(reference.with_digest(descriptor["digest"]))
            return

        image = self._fetch_image(self.name)

        if image is None:
            raise ValidationError("image '%s' not found" % self.name)

        image.validate()

    def _validate_manifest(self, reference):
        raw_manifest, media_type = self.client.get_manifest(reference)

        if sha256_digest(raw_manifest) != reference.digest:
            raise ValidationError(
                "manifest %s has digest %s" % (reference, sha256_digest(raw_manifest))
            )

        try:
            image = self._image_from_manifest(reference, raw_manifest)
        except (ValueError, KeyError) as e:
            raise ValidationError("reading manifest %s: %s" % (reference, e))

        image.validate()

    def valid(self):
        try:
            self.validate()
        except Error as e:
            self.log.debug("Image %s is not valid: %s" % (self.name, e))
            return False

        return True

    def check_read_access(self):
        try:
            self._head()
        except RegistryError as e:
            if e.status_code is not None:
                return e.status_code not in UNAUTHORIZED_CODES
            return False
        except Error:
            return False

        return True

    def check_read_write_access(self):
        try:
            reference = self._reference(self.name)
        except Error:
            return False

        if not self.check_read_access():
            return False

        try:
            retry(
                self.log,
                "Checking push permission for %s" % reference,
                self.client.check_push_permission,
                reference,
            )
        except Error:
            return False

        return True

    def get_layer(self, diff_id):
        layer = find_layer_with_diff_id(self._image.layers(), diff_id, self.name)

        return layer.uncompressed()

    def delete(self):
        identifier = self.identifier()
        self.log.debug("Deleting image %s..." % identifier)
        self.client.delete_manifest(self._reference(str(identifier)))

    # modifiers

    def add_layer(self, path):
        self._add_layer(path)

    def add_layer_with_diff_id(self, path, diff_id):
        # Same as add_layer, the known diff ID only saves hashing the archive
        self._add_layer(path, diff_id)

    def _add_layer(self, path, diff_id=None):
        layer = layer_from_file(
            path, self.requested_media_types.layer_type(), diff_id=diff_id
        )
        self.log.debug("Adding layer %s to image %s" % (layer.diff_id, self.name))
        self._image = self._image.append_layers([layer])

    def reuse_layer(self, diff_id):
        layer = find_layer_with_diff_id(self.prev_layers, diff_id, self.name)
        layer = layer.with_media_type(
            self.requested_media_types.convert_layer_type(layer.media_type)
        )
        self.log.debug("Reusing layer %s in image %s" % (diff_id, self.name))
        self._image = self._image.append_layers([layer])

    def rebase(self, base_top_layer, new_base):
        self._check_compatible_base(new_base)

        new_base_image = new_base.underlying_image()
        config, layers = rebase.rebase(
            self._image.config_file(),
            self._image.layers(),
            base_top_layer,
            new_base_image.config_file(),
            new_base_image.layers(),
            self.name,
        )

        self._image = media_types.normalize(
            self._image.with_layers(config, layers), self.requested_media_types
        )

    def save_as(self, name, *additional_names):
        image = self._image
        config = prepare_config(
            image.config_file(), self.created_at, len(image.layers())
        )
        self._image = image = image.with_config_file(config)

        save_to_destinations(
            self.log,
            [name] + list(additional_names),
            lambda destination: self._push(image, destination),
        )

    def _push(self, image, name):
        reference = self._reference(name)

        for layer in image.layers():
            if self.client.blob_exists(reference, layer.digest):
                self.log.debug("Layer %s already exists" % layer.digest)
                continue

            with layer.compressed() as blob:
                self.client.put_blob(reference, layer.digest, blob.read())

        if not self.client.blob_exists(reference, image.config_name()):
            self.client.put_blob(
                reference, image.config_name(), image.raw_config_file()
            )

        self.client.put_manifest(reference, image.raw_manifest(), image.media_type())

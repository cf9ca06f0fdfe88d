# -*- coding: utf-8 -*-

import hashlib
import json
import logging
import os
import shutil
from collections import OrderedDict
from typing import Optional

from docker_imgutil import media_types, rebase
from docker_imgutil.errors import Error, ValidationError
from docker_imgutil.identifier import config_identifier
from docker_imgutil.image import Image
from docker_imgutil.layer import CHUNK_SIZE, find_layer_with_diff_id, layer_from_file
from docker_imgutil.lib.common import NORMALIZED_DATE_TIME, dump_json
from docker_imgutil.media_types import MediaTypes
from docker_imgutil.save import prepare_config, save_to_destinations
from docker_imgutil.v1_image import (
    Platform,
    V1Image,
    empty_image,
    image_from_raw,
    select_manifest,
)

REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"

LAYOUT_FILE = "oci-layout"
INDEX_FILE = "index.json"
LAYOUT_VERSION = "1.0.0"


def _blob_path(path, digest):
    algorithm, _, encoded = digest.partition(":")

    return os.path.join(path, "blobs", algorithm, encoded)


def image_exists(path):
    return os.path.isfile(os.path.join(path, INDEX_FILE))


def empty_index():
    index = OrderedDict()
    index["schemaVersion"] = 2
    index["mediaType"] = media_types.OCI_INDEX
    index["manifests"] = []

    return index


def read_index(path):
    index_file = os.path.join(path, INDEX_FILE)

    if not os.path.isfile(index_file):
        raise Error("image index not found in '%s'" % path)

    with open(index_file, "r") as f:
        return json.load(f, object_pairs_hook=OrderedDict)


def read_blob(path, digest):
    return open(_blob_path(path, digest), "rb")


def write_index(path, index):
    """Initializes the layout at the path, replacing its index"""

    os.makedirs(os.path.join(path, "blobs"), exist_ok=True)

    with open(os.path.join(path, LAYOUT_FILE), "w") as f:
        f.write(dump_json(OrderedDict(imageLayoutVersion=LAYOUT_VERSION))[0])

    with open(os.path.join(path, INDEX_FILE), "w") as f:
        f.write(dump_json(index)[0])


def write_blob(path, digest, stream):
    blob_file = _blob_path(path, digest)

    if os.path.exists(blob_file):
        return

    os.makedirs(os.path.dirname(blob_file), exist_ok=True)

    if isinstance(stream, bytes):
        with open(blob_file, "wb") as f:
            f.write(stream)
        return

    with open(blob_file, "wb") as f:
        shutil.copyfileobj(stream, f, CHUNK_SIZE)


def append_image(path, image, annotations=None):
    """Writes all blobs of the image and adds its manifest to the index"""

    for layer in image.layers():
        with layer.compressed() as blob:
            write_blob(path, layer.digest, blob)

    write_blob(path, image.config_name(), image.raw_config_file())
    write_blob(path, image.digest(), image.raw_manifest())

    config = image.config_file()

    descriptor = OrderedDict()
    descriptor["mediaType"] = image.media_type()
    descriptor["size"] = image.size()
    descriptor["digest"] = image.digest()

    if annotations:
        descriptor["annotations"] = OrderedDict(annotations)

    descriptor["platform"] = OrderedDict(
        [("architecture", config.get("architecture")), ("os", config.get("os"))]
    )

    index = read_index(path)
    index["manifests"].append(descriptor)
    write_index(path, index)


def image_from_layout(path, platform):
    """Reads the image matching the platform from the layout at the path"""

    index = read_index(path)
    descriptor = select_manifest(index, platform)

    with read_blob(path, descriptor["digest"]) as f:
        raw_manifest = f.read()

    manifest = json.loads(raw_manifest)

    with read_blob(path, manifest["config"]["digest"]) as f:
        raw_config = f.read()

    def opener(digest):
        return read_blob(path, digest)

    return image_from_raw(raw_manifest, raw_config, opener)


class LayoutImage(Image):
    """Image stored in an OCI layout directory"""

    FORMAT = "layout"

    def __init__(
        self,
        log,
        path: str,
        base_image_path: Optional[str] = None,
        base_image: Optional[V1Image] = None,
        previous_image_path: Optional[str] = None,
        created_at=None,
        requested_media_types: MediaTypes = MediaTypes.MISSING,
        platform: Optional[Platform] = None,
    ):
        self.log: logging.Logger = log
        self.name: str = path
        self.platform: Platform = platform or Platform()
        self.created_at = created_at or NORMALIZED_DATE_TIME
        self.ref_name: Optional[str] = None
        self.prev_layers = ()

        # Layouts default to OCI media types
        if requested_media_types is MediaTypes.MISSING:
            requested_media_types = MediaTypes.OCI

        self.requested_media_types: MediaTypes = requested_media_types

        if previous_image_path:
            self.prev_layers = tuple(self._load(previous_image_path).layers())

            self.log.debug(
                "Previous image %s has %s layers"
                % (previous_image_path, len(self.prev_layers))
            )

        if base_image_path:
            image = self._load(base_image_path)
        elif base_image is not None:
            image = base_image
        else:
            image = empty_image(self.platform, self.requested_media_types)

        self._image: V1Image = media_types.normalize(image, self.requested_media_types)

    def _load(self, path):
        """Reads the image at the path, an empty image if there is none"""

        if not image_exists(path):
            self.log.debug(
                "No image found in '%s', starting from an empty image" % path
            )
            return empty_image(self.platform, self.requested_media_types)

        self.log.debug("Reading image from '%s'..." % path)

        try:
            return image_from_layout(path, self.platform)
        except (OSError, ValueError, KeyError) as e:
            raise Error("reading image from '%s': %s" % (path, e))

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
        return config_identifier(self._image.config_file())

    def annotate_ref_name(self, ref_name):
        self.ref_name = ref_name

    def get_annotate_ref_name(self):
        return self.ref_name

    def found(self):
        return image_exists(self.name)

    def validate(self):
        """Raises ValidationError when the layout at the image path is not valid"""

        try:
            index = read_index(self.name)
        except Error as e:
            raise ValidationError(str(e))

        manifests = index.get("manifests") or []

        if not manifests:
            raise ValidationError("no manifests in the index of '%s'" % self.name)

        for descriptor in manifests:
            blob_file = _blob_path(self.name, descriptor["digest"])

            if not os.path.isfile(blob_file):
                raise ValidationError(
                    "blob %s missing in '%s'" % (descriptor["digest"], self.name)
                )

            with open(blob_file, "rb") as f:
                digest = "sha256:%s" % hashlib.sha256(f.read()).hexdigest()

            if digest != descriptor["digest"]:
                raise ValidationError(
                    "blob %s in '%s' has digest %s"
                    % (descriptor["digest"], self.name, digest)
                )

        try:
            image = image_from_layout(self.name, self.platform)
        except (Error, OSError, ValueError, KeyError) as e:
            raise ValidationError("reading image from '%s': %s" % (self.name, e))

        image.validate()

    def valid(self):
        try:
            self.validate()
        except ValidationError as e:
            self.log.debug("Image %s is not valid: %s" % (self.name, e))
            return False

        return True

    def delete(self):
        self.log.debug("Removing '%s' directory" % self.name)
        shutil.rmtree(self.name)

    def get_layer(self, diff_id):
        layer = find_layer_with_diff_id(self._image.layers(), diff_id, self.name)

        return layer.uncompressed()

    # modifiers

    def add_layer(self, path):
        self._add_layer(path)

    def add_layer_with_diff_id(self, path, diff_id):
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

        annotations = {}

        if self.ref_name:
            annotations[REF_NAME_ANNOTATION] = self.ref_name

        def write(path):
            write_index(path, empty_index())
            append_image(path, image, annotations)

        save_to_destinations(self.log, [name] + list(additional_names), write)

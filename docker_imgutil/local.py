# -*- coding: utf-8 -*-

import copy
import io
import json
import logging
import os
import shutil
import tarfile
import tempfile
import threading
from collections import OrderedDict, namedtuple
from typing import Optional

import docker.errors as docker_errors
from packaging import version as packaging_version

from docker_imgutil import config as image_config
from docker_imgutil import rebase
from docker_imgutil.errors import Error
from docker_imgutil.identifier import IDIdentifier
from docker_imgutil.image import Chdir, Image
from docker_imgutil.layer import (
    CHUNK_SIZE,
    append_to_config,
    find_layer_with_diff_id,
    layer_from_file,
)
from docker_imgutil.lib import common
from docker_imgutil.lib.common import NORMALIZED_DATE_TIME, dump_json, retry
from docker_imgutil.media_types import MediaTypes
from docker_imgutil.save import prepare_config, save_to_destinations
from docker_imgutil.v1_image import Platform

MINIMAL_API_VERSION = "1.22"
""" Oldest Docker API loading images with the manifest.json format """

LocalLayer = namedtuple("LocalLayer", ["diff_id", "path", "source", "chain"])
"""
Layer of a daemon image. Layers added from a file have a path. Layers
stored in the daemon have the ID of the image they come from (source)
and the diff IDs of that image up to and including the layer (chain).
"""

DaemonImage = namedtuple("DaemonImage", ["config", "layers", "image_id"])
""" State of a local image, image_id is None once the image was modified """


def config_from_inspect(inspect):
    """Converts the output of 'docker inspect' into an image config file"""

    config = OrderedDict()
    config[image_config.ARCHITECTURE] = inspect.get("Architecture", "")
    config[image_config.OS] = inspect.get("Os", "")

    if inspect.get("OsVersion"):
        config[image_config.OS_VERSION] = inspect["OsVersion"]
    if inspect.get("Variant"):
        config[image_config.VARIANT] = inspect["Variant"]
    if inspect.get("Created"):
        config[image_config.CREATED] = inspect["Created"]

    config["config"] = OrderedDict(inspect.get("Config") or {})

    diff_ids = list((inspect.get("RootFS") or {}).get("Layers") or [])
    config["rootfs"] = OrderedDict(type="layers", diff_ids=diff_ids)
    config["history"] = [OrderedDict() for _ in diff_ids]

    if inspect.get("DockerVersion"):
        config["docker_version"] = inspect["DockerVersion"]
    if inspect.get("Container"):
        config["container"] = inspect["Container"]

    return config


def daemon_layers(inspect):
    """Layers of an image stored in the daemon, from the output of 'docker inspect'"""

    diff_ids = list((inspect.get("RootFS") or {}).get("Layers") or [])

    return tuple(
        LocalLayer(diff_id, None, inspect["Id"], tuple(diff_ids[: index + 1]))
        for index, diff_id in enumerate(diff_ids)
    )


class LocalImage(Image):
    """Image stored in the Docker daemon"""

    FORMAT = "local"

    def __init__(
        self,
        log,
        repo_name: str,
        docker=None,
        base_image: Optional[str] = None,
        previous_image: Optional[str] = None,
        created_at=None,
        platform: Optional[Platform] = None,
        tmp_dir: Optional[str] = None,
    ):
        self.log: logging.Logger = log
        self.name: str = repo_name
        self.docker = docker or common.docker_client(self.log)
        self.created_at = created_at or NORMALIZED_DATE_TIME
        self.tmp_dir: Optional[str] = tmp_dir
        self.prev_layers = ()

        # The daemon only stores images using Docker media types
        self.requested_media_types: MediaTypes = MediaTypes.DOCKER

        docker_version = self.docker.version()
        self.api_version: str = docker_version["ApiVersion"]
        self.platform: Platform = platform or Platform(
            os=docker_version.get("Os", "linux"),
            architecture=docker_version.get("Arch", "amd64"),
        )

        self.log.debug(
            "Docker %s, API %s" % (docker_version.get("Version"), self.api_version)
        )

        if previous_image:
            previous = self._inspect(previous_image)

            if previous:
                self.prev_layers = daemon_layers(previous)

        inspect = self._inspect(base_image) if base_image else None

        if inspect:
            config = config_from_inspect(inspect)
            self._image = DaemonImage(config, daemon_layers(inspect), inspect["Id"])
        else:
            config = image_config.new_config(
                os_name=self.platform.os,
                architecture=self.platform.architecture,
                os_version=self.platform.os_version,
                variant=self.platform.variant,
            )
            self._image = DaemonImage(config, (), None)

    def _inspect(self, name):
        """Returns the output of 'docker inspect', None if there is no such image"""

        try:
            return retry(
                self.log, "Inspecting image %s" % name, self.docker.inspect_image, name
            )
        except docker_errors.NotFound:
            self.log.debug("Image %s not found in the Docker daemon" % name)
            return None
        except docker_errors.APIError as e:
            raise Error("inspecting image '%s': %s" % (name, e))

    def _read_config(self):
        return copy.deepcopy(self._image.config)

    def _write_config(self, config):
        self._image = DaemonImage(config, self._image.layers, None)

    def _layers(self):
        return list(self._image.layers)

    def underlying_image(self):
        return self._image

    def manifest_size(self):
        # The daemon does not store a registry manifest
        return 0

    def identifier(self):
        if self._image.image_id:
            return IDIdentifier(self._image.image_id)

        # The daemon names images after the digest of their config
        return IDIdentifier(self._config_digest(self._image.config))

    def _config_digest(self, config):
        return "sha256:%s" % dump_json(config)[1]

    def found(self):
        return self._inspect(self.name) is not None

    def valid(self):
        return self.found()

    def delete(self):
        inspect = self._inspect(self.name)

        if inspect is None:
            raise Error("image '%s' not found in the Docker daemon" % self.name)

        self.log.info("Removing %s image..." % self.name)

        try:
            self.docker.remove_image(inspect["Id"], force=False, noprune=False)
        except docker_errors.APIError as e:
            raise Error("removing image '%s': %s" % (self.name, e))

    # modifiers

    def add_layer(self, path):
        diff_id = layer_from_file(path).diff_id
        self._append(LocalLayer(diff_id, path, None, None))

    def add_layer_with_diff_id(self, path, diff_id):
        if not os.path.isfile(path):
            raise Error("Layer file '%s' does not exist" % path)

        self._append(LocalLayer(diff_id, path, None, None))

    def reuse_layer(self, diff_id):
        self._append(find_layer_with_diff_id(self.prev_layers, diff_id, self.name))

    def _append(self, layer):
        self.log.debug("Adding layer %s to image %s" % (layer.diff_id, self.name))

        config = append_to_config(self._image.config, [layer.diff_id])
        self._image = DaemonImage(config, self._image.layers + (layer,), None)

    def rebase(self, base_top_layer, new_base):
        self._check_compatible_base(new_base)

        config, layers = rebase.rebase(
            self._image.config,
            self._image.layers,
            base_top_layer,
            new_base.underlying_image().config,
            new_base.underlying_image().layers,
            self.name,
        )

        self._image = DaemonImage(config, tuple(layers), None)

    def get_layer(self, diff_id):
        layer = find_layer_with_diff_id(self._image.layers, diff_id, self.name)

        if layer.path:
            return layer_from_file(layer.path, diff_id=diff_id).uncompressed()

        return self._layer_from_daemon(layer)

    def _layer_from_daemon(self, layer):
        """Exports the image the layer comes from and reads the layer archive"""

        directory = tempfile.mkdtemp(prefix="docker-imgutil-", dir=self.tmp_dir)

        try:
            path = self._export_layers(layer.source, directory).get(layer.diff_id)

            if path:
                exported = layer_from_file(path, diff_id=layer.diff_id)

                with exported.uncompressed() as stream:
                    return io.BytesIO(stream.read())
        finally:
            shutil.rmtree(directory, ignore_errors=True)

        raise Error(
            "layer '%s' not found in image '%s' exported from the Docker daemon"
            % (layer.diff_id, layer.source)
        )

    def _export_layers(self, image_id, directory):
        """
        Saves the image into the directory and returns the paths
        of its layer archives by diff ID.
        """
        self._save_image(image_id, directory)

        with open(os.path.join(directory, "manifest.json"), "r") as f:
            manifest = json.load(f)[0]

        with open(os.path.join(directory, manifest["Config"]), "r") as f:
            diff_ids = json.load(f)["rootfs"]["diff_ids"]

        return dict(
            (diff_id, os.path.join(directory, layer_path))
            for diff_id, layer_path in zip(diff_ids, manifest["Layers"])
        )

    def _extract_tar(self, fileobj, directory, errors):
        try:
            with tarfile.open(fileobj=fileobj, mode="r|") as tar:
                tar.extractall(path=directory, filter="data")
        except Exception as e:
            errors.append(e)
        finally:
            # Drain the pipe so that the writer never blocks
            while fileobj.read(CHUNK_SIZE):
                pass

    def _stream_image(self, image_id, directory):
        image = self.docker.get_image(image_id)

        fd_r, fd_w = os.pipe()

        r = os.fdopen(fd_r, "rb")
        w = os.fdopen(fd_w, "wb")

        errors = []
        extracter = threading.Thread(
            target=self._extract_tar, args=(r, directory, errors)
        )
        extracter.start()

        try:
            for chunk in image:
                w.write(chunk)
        finally:
            w.close()
            extracter.join()
            r.close()

        if errors:
            raise errors[0]

    def _save_image(self, image_id, directory):
        """Saves the image as a tar archive under specified name"""

        for x in range(common.MAX_RETRIES):
            self.log.info("Saving image %s to %s directory..." % (image_id, directory))
            self.log.debug("Try #%s..." % (x + 1))

            try:
                self._stream_image(image_id, directory)
                self.log.info("Image saved!")
                return True
            except Exception as e:
                self.log.exception(e)
                self.log.warning(
                    f"An error occurred while saving the {image_id} image, retrying..."
                )

        raise Error(f"Couldn't save {image_id} image!")

    # saving

    def _parse_image_name(self, image):
        """
        Parses the provided image name and splits it in the
        name and tag part, if possible. If no tag is provided
        'latest' is used.
        """
        if ":" in image and "/" not in image.split(":")[-1]:
            image_tag = image.split(":")[-1]
            image_name = image[: -(len(image_tag) + 1)]
        else:
            image_tag = "latest"
            image_name = image

        return (image_name, image_tag)

    def _generate_manifest_metadata(self, config_file, name, layer_files):
        manifest = OrderedDict()
        manifest["Config"] = config_file
        manifest["RepoTags"] = ["%s:%s" % self._parse_image_name(name)]
        manifest["Layers"] = layer_files

        return [manifest]

    def _prepare_image_directory(self, directory, config, name, export_directory):
        json_config, config_sha = dump_json(config)
        config_file = "%s.json" % config_sha

        with open(os.path.join(directory, config_file), "w") as f:
            f.write(json_config)

        diff_ids = [layer.diff_id for layer in self._image.layers]
        exports = {}
        layer_files = []

        for index, layer in enumerate(self._image.layers):
            layer_file = "%s.tar" % layer.diff_id.replace("sha256:", "")

            if layer_file not in layer_files:
                target = os.path.join(directory, layer_file)

                if layer.path:
                    shutil.copyfile(layer.path, target)
                elif layer.chain == tuple(diff_ids[: index + 1]):
                    # The daemon has this chain of layers and does not
                    # read its archive
                    open(target, "w").close()
                else:
                    shutil.copyfile(
                        self._exported_layer(layer, exports, export_directory),
                        target,
                    )

            layer_files.append(layer_file)

        manifest = self._generate_manifest_metadata(config_file, name, layer_files)

        with open(os.path.join(directory, "manifest.json"), "w") as f:
            f.write(dump_json(manifest, True)[0])

        return "sha256:%s" % config_sha

    def _exported_layer(self, layer, exports, export_directory):
        """Path of the archive of a daemon layer, exporting its image once"""

        if layer.source not in exports:
            directory = os.path.join(export_directory, str(len(exports)))
            os.makedirs(directory)
            exports[layer.source] = self._export_layers(layer.source, directory)

        path = exports[layer.source].get(layer.diff_id)

        if not path:
            raise Error(
                "layer '%s' not found in image '%s' exported from the Docker daemon"
                % (layer.diff_id, layer.source)
            )

        return path

    def _tar_image(self, target_tar_file, directory):
        with tarfile.open(target_tar_file, "w", format=tarfile.PAX_FORMAT) as tar:
            self.log.debug("Generating tar archive for the image...")
            with Chdir(directory):
                for f in os.listdir("."):
                    tar.add(f)
            self.log.debug("Archive generated")

    def _load(self, config, name):
        directory = tempfile.mkdtemp(prefix="docker-imgutil-", dir=self.tmp_dir)

        try:
            image_directory = os.path.join(directory, "image")
            os.makedirs(image_directory)

            image_id = self._prepare_image_directory(
                image_directory, config, name, os.path.join(directory, "exports")
            )

            tar_file = os.path.join(directory, "image.tar")
            self._tar_image(tar_file, image_directory)

            with open(tar_file, "rb") as f:
                self.log.debug("Loading image %s..." % name)
                self._check_load_output(self.docker.load_image(f), name)
                self.log.debug("Image loaded!")
        except docker_errors.APIError as e:
            raise Error("loading image '%s': %s" % (name, e))
        finally:
            shutil.rmtree(directory, ignore_errors=True)

        return image_id

    def _check_load_output(self, output, name):
        """Reads the progress stream of 'docker load', failing on reported errors"""

        for line in output or []:
            if not isinstance(line, dict):
                continue

            if line.get("error") or line.get("errorDetail"):
                message = line.get("error") or line["errorDetail"].get("message")
                raise Error("loading image '%s': %s" % (name, message))

            if line.get("stream"):
                self.log.debug(line["stream"].strip())

    def _tag(self, image_id, name):
        repository, tag = self._parse_image_name(name)

        try:
            self.docker.tag(image_id, repository, tag)
        except docker_errors.APIError as e:
            raise Error("tagging image '%s': %s" % (name, e))

    def save_as(self, name, *additional_names):
        if packaging_version.parse(self.api_version) < packaging_version.parse(
            MINIMAL_API_VERSION
        ):
            raise Error(
                "Docker API %s is too old, at least %s is required"
                % (self.api_version, MINIMAL_API_VERSION)
            )

        config = prepare_config(
            self._image.config, self.created_at, len(self._image.layers)
        )
        self._image = DaemonImage(config, self._image.layers, None)

        loaded = {}

        def write(destination):
            if "image_id" not in loaded:
                loaded["image_id"] = self._load(config, destination)
                self._image = DaemonImage(config, self._image.layers, loaded["image_id"])
            else:
                self._tag(loaded["image_id"], destination)

        save_to_destinations(self.log, [name] + list(additional_names), write)


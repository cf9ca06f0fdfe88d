# -*- coding: utf-8 -*-

import os

from docker_imgutil import config as image_config
from docker_imgutil.errors import (
    ConfigUnavailableError,
    Error,
    IncompatibleBaseError,
    UnsupportedOperationError,
)
from docker_imgutil.lib.common import parse_date


class Chdir(object):
    """Context manager for changing the current working directory"""

    def __init__(self, new_path):
        self.newPath = os.path.expanduser(new_path)

    def __enter__(self):
        self.savedPath = os.getcwd()
        os.chdir(self.newPath)

    def __exit__(self, etype, value, traceback):
        os.chdir(self.savedPath)


class Image(object):
    """
    Operations shared by all image backends.

    Getters and setters are implemented here on top of two hooks every
    backend provides: _read_config(), returning the current config file,
    and _write_config(config), swapping a new config into the backend's
    underlying image. This class keeps no state of its own.

    This class should not be used directly.
    """

    FORMAT = None
    """ Backend family of the image """

    name = None

    def _read_config(self):
        raise NotImplementedError()

    def _write_config(self, config):
        raise NotImplementedError()

    def _layers(self):
        """Layers of the current image, from bottom to top"""
        raise NotImplementedError()

    def _config_file(self):
        try:
            config = self._read_config()
        except Error:
            raise
        except Exception as e:
            raise ConfigUnavailableError(
                "getting config file for image '%s': %s" % (self.name, e)
            )

        if config is None:
            raise ConfigUnavailableError("missing config for image '%s'" % self.name)

        return config

    # getters

    def architecture(self):
        return image_config.required_field(
            self._config_file(), image_config.ARCHITECTURE, self.name
        )

    def os(self):
        return image_config.required_field(
            self._config_file(), image_config.OS, self.name
        )

    def os_version(self):
        return self._config_file().get(image_config.OS_VERSION, "")

    def variant(self):
        # Optional, empty is fine
        return self._config_file().get(image_config.VARIANT, "")

    def created_at(self):
        return parse_date(self._config_file().get(image_config.CREATED))

    def entrypoint(self):
        return image_config.container_config(self._config_file()).get("Entrypoint")

    def cmd(self):
        return image_config.container_config(self._config_file()).get("Cmd")

    def working_dir(self):
        return image_config.container_config(self._config_file()).get(
            "WorkingDir", ""
        )

    def env(self, key):
        return image_config.get_env(self._config_file(), key)

    def label(self, key):
        return image_config.get_label(self._config_file(), key)

    def labels(self):
        return image_config.get_labels(self._config_file())

    def top_layer(self):
        layers = self._layers()

        if not layers:
            raise Error("image '%s' has no layers" % self.name)

        return layers[-1].diff_id

    def get_annotate_ref_name(self):
        raise UnsupportedOperationError(
            "getting annotated ref name is not supported for %s image '%s'"
            % (self.FORMAT, self.name)
        )

    # setters

    def rename(self, name):
        self.name = name

    def annotate_ref_name(self, ref_name):
        raise UnsupportedOperationError(
            "annotating ref name is not supported for %s image '%s'"
            % (self.FORMAT, self.name)
        )

    def set_architecture(self, architecture):
        self._write_config(
            image_config.set_field(
                self._config_file(), image_config.ARCHITECTURE, architecture
            )
        )

    def set_os(self, os_name):
        self._write_config(
            image_config.set_field(self._config_file(), image_config.OS, os_name)
        )

    def set_os_version(self, os_version):
        self._write_config(
            image_config.set_field(
                self._config_file(), image_config.OS_VERSION, os_version
            )
        )

    def set_variant(self, variant):
        self._write_config(
            image_config.set_field(self._config_file(), image_config.VARIANT, variant)
        )

    def set_cmd(self, *cmd):
        self._write_config(
            image_config.set_container_field(self._config_file(), "Cmd", list(cmd))
        )

    def set_entrypoint(self, *entrypoint):
        self._write_config(
            image_config.set_container_field(
                self._config_file(), "Entrypoint", list(entrypoint)
            )
        )

    def set_working_dir(self, working_dir):
        self._write_config(
            image_config.set_container_field(
                self._config_file(), "WorkingDir", working_dir
            )
        )

    def set_env(self, key, value):
        self._write_config(image_config.set_env(self._config_file(), key, value))

    def set_label(self, key, value):
        self._write_config(image_config.set_label(self._config_file(), key, value))

    def remove_label(self, key):
        self._write_config(image_config.remove_label(self._config_file(), key))

    # modifiers

    def add_layer(self, path):
        raise NotImplementedError()

    def add_layer_with_diff_id(self, path, diff_id):
        raise NotImplementedError()

    def reuse_layer(self, diff_id):
        raise NotImplementedError()

    def rebase(self, base_top_layer, new_base):
        raise NotImplementedError()

    def get_layer(self, diff_id):
        raise NotImplementedError()

    def save(self, *additional_names):
        return self.save_as(self.name, *additional_names)

    def save_as(self, name, *additional_names):
        raise NotImplementedError()

    def identifier(self):
        raise NotImplementedError()

    def found(self):
        raise NotImplementedError()

    def valid(self):
        raise NotImplementedError()

    def delete(self):
        raise NotImplementedError()

    def _check_compatible_base(self, new_base):
        if not isinstance(new_base, self.__class__):
            raise IncompatibleBaseError(
                "expected new base to be a %s image, got %s for image '%s'"
                % (
                    self.FORMAT,
                    getattr(new_base, "FORMAT", type(new_base).__name__),
                    self.name,
                )
            )

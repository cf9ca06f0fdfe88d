# -*- coding: utf-8 -*-

"""
Copy-on-write edits of image config files.

Every function taking a config returns a new config and leaves the
provided one untouched.
"""

import copy
from collections import OrderedDict

from docker_imgutil.errors import MissingRequiredFieldError

ARCHITECTURE = "architecture"
OS = "os"
OS_VERSION = "os.version"
VARIANT = "variant"
CREATED = "created"

WINDOWS = "windows"


def new_config(os_name="linux", architecture="amd64", os_version=None, variant=None):
    config = OrderedDict()
    config[ARCHITECTURE] = architecture
    config[OS] = os_name

    if os_version:
        config[OS_VERSION] = os_version
    if variant:
        config[VARIANT] = variant

    config["config"] = OrderedDict()
    config["rootfs"] = OrderedDict(type="layers", diff_ids=[])
    config["history"] = []

    return config


def container_config(config):
    """Returns the runtime config section, empty if the image has none"""
    return config.get("config") or {}


def required_field(config, field, image_name):
    value = config.get(field)

    if not value:
        raise MissingRequiredFieldError(
            "missing %s for image '%s'" % (field, image_name)
        )

    return value


def set_field(config, field, value):
    config = copy.deepcopy(config)

    if value:
        config[field] = value
    else:
        # Empty values are omitted from the JSON
        config.pop(field, None)

    return config


def set_container_field(config, field, value):
    config = copy.deepcopy(config)
    section = config.get("config")

    if section is None:
        section = config["config"] = OrderedDict()

    section[field] = value

    return config


def _ignore_case(config):
    return config.get(OS) == WINDOWS


def _env_key(entry):
    return entry.partition("=")[0]


def get_env(config, key):
    ignore_case = _ignore_case(config)

    for entry in container_config(config).get("Env") or []:
        found_key, _, value = entry.partition("=")

        if found_key == key or (ignore_case and found_key.upper() == key.upper()):
            return value

    return ""


def set_env(config, key, value):
    """
    Sets the environment variable, replacing an existing entry for the
    same key in place or appending a new one.
    """
    ignore_case = _ignore_case(config)
    env = list(container_config(config).get("Env") or [])
    entry = "%s=%s" % (key, value)

    for index, existing in enumerate(env):
        found_key = _env_key(existing)

        if found_key == key or (ignore_case and found_key.upper() == key.upper()):
            env[index] = entry
            break
    else:
        env.append(entry)

    return set_container_field(config, "Env", env)


def get_label(config, key):
    return (container_config(config).get("Labels") or {}).get(key, "")


def get_labels(config):
    return dict(container_config(config).get("Labels") or {})


def set_label(config, key, value):
    labels = OrderedDict(container_config(config).get("Labels") or {})
    labels[key] = value

    return set_container_field(config, "Labels", labels)


def remove_label(config, key):
    labels = container_config(config).get("Labels")

    if not labels or key not in labels:
        return copy.deepcopy(config)

    labels = OrderedDict(labels)
    del labels[key]

    return set_container_field(config, "Labels", labels)

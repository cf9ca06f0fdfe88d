# -*- coding: utf-8 -*-

import copy
from collections import OrderedDict, namedtuple

from docker_imgutil.config import ARCHITECTURE, OS, OS_VERSION
from docker_imgutil.errors import BaseLayerNotFoundError

LayerRange = namedtuple("LayerRange", ["start", "end"])
""" Range of layers [start, end) of an image """


def base_layer_range(layers, top_diff_id, image_name=None):
    """
    Returns the range of layers from the bottom of the image up to
    (and including) the layer with the provided diff ID.
    """
    for index, layer in enumerate(layers):
        if layer.diff_id == top_diff_id:
            return LayerRange(0, index + 1)

    raise BaseLayerNotFoundError(
        "could not find base layer '%s' in image '%s'" % (top_diff_id, image_name)
    )


def history_split(history, number_of_layers):
    """
    Finds the position in the history right after the entry describing
    the given number of (non-empty) layers.
    """
    if number_of_layers == 0:
        return 0

    current_layer = 0

    for index, entry in enumerate(history):
        if not entry.get("empty_layer", False):
            current_layer += 1

            if current_layer == number_of_layers:
                return index + 1

    return len(history)


def rebase(config, layers, top_diff_id, new_base_config, new_base_layers, image_name=None):
    """
    Replaces the layers of the image at or below the layer with the
    provided diff ID with all layers of the new base.

    Layers above the old base keep their relative order. The resulting
    config adopts the platform of the new base. Returns a (config, layers)
    tuple, the arguments are left untouched.
    """
    base = base_layer_range(layers, top_diff_id, image_name)
    upper_layers = list(layers[base.end :])

    history = config.get("history") or []
    upper_history = history[history_split(history, base.end) :]

    rebased = copy.deepcopy(config)
    rootfs = rebased.setdefault("rootfs", OrderedDict(type="layers"))
    rootfs["diff_ids"] = [layer.diff_id for layer in new_base_layers] + [
        layer.diff_id for layer in upper_layers
    ]
    rebased["history"] = copy.deepcopy(
        list(new_base_config.get("history") or [])
    ) + copy.deepcopy(list(upper_history))

    for field in ARCHITECTURE, OS, OS_VERSION:
        if new_base_config.get(field):
            rebased[field] = new_base_config[field]
        else:
            rebased.pop(field, None)

    return rebased, list(new_base_layers) + upper_layers

# -*- coding: utf-8 -*-

import copy
from collections import OrderedDict

from docker_imgutil.errors import SaveDiagnostic, SaveError
from docker_imgutil.lib.common import format_date

# Build provenance fields, they would leak details of the build environment
PROVENANCE_FIELDS = ("docker_version", "container")


def prepare_config(config, created_at, number_of_layers):
    """
    Returns a copy of the config ready to be persisted: creation time set,
    one history entry per layer carrying that time and the build
    provenance removed.
    """
    config = copy.deepcopy(config)
    created = format_date(created_at)

    config["created"] = created
    config["history"] = [
        OrderedDict(created=created) for _ in range(number_of_layers)
    ]

    for field in PROVENANCE_FIELDS:
        config.pop(field, None)

    return config


def save_to_destinations(log, destinations, write):
    """
    Calls write for every destination in order.

    Failures do not stop the loop, they are collected and raised at the
    end as a single SaveError. Destinations written successfully are kept.
    """
    diagnostics = []

    for destination in destinations:
        log.debug("Saving image to '%s'..." % destination)

        try:
            write(destination)
        except Exception as e:
            log.warning("Could not save image to '%s': %s" % (destination, e))
            diagnostics.append(SaveDiagnostic(destination, e))
        else:
            log.info("Image saved to '%s'" % destination)

    if diagnostics:
        raise SaveError(diagnostics)

# -*- coding: utf-8 -*-

from docker_imgutil.lib.common import canonical_json, sha256_digest


class Identifier(object):
    def __init__(self, value):
        self.value = value

    def __str__(self):
        return self.value

    def __repr__(self):
        return "%s(%r)" % (self.__class__.__name__, self.value)

    def __eq__(self, other):
        return type(self) is type(other) and self.value == other.value

    def __hash__(self):
        return hash((self.__class__.__name__, self.value))


class DigestIdentifier(Identifier):
    """Identifies an image by a content digest, optionally with its repository"""

    @property
    def digest(self):
        return self.value.rsplit("@", 1)[-1]


class IDIdentifier(Identifier):
    """Identifies an image stored in the Docker daemon by its image ID"""


def digest_identifier(repository, digest):
    return DigestIdentifier("%s@%s" % (repository, digest))


def config_identifier(config):
    """
    Identifier computed from the canonical JSON rendering of the config,
    used for images that do not have a digest assigned by storage.
    """
    return DigestIdentifier(sha256_digest(canonical_json(config)))

# -*- coding: utf-8 -*-

import copy
import gzip
import hashlib
import os
import shutil
import tempfile
from collections import OrderedDict

from docker_imgutil import media_types
from docker_imgutil.errors import Error, LayerNotFoundError
from docker_imgutil.lib.common import format_date

GZIP_MAGIC = b"\x1f\x8b"

CHUNK_SIZE = 1024 * 1024


def _hash_stream(stream):
    sha = hashlib.sha256()
    size = 0

    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        sha.update(chunk)
        size += len(chunk)

    return "sha256:%s" % sha.hexdigest(), size


def _is_gzipped(path):
    with open(path, "rb") as f:
        return f.read(2) == GZIP_MAGIC


def _compress(path, target):
    # mtime and file name are fixed so that the blob digest only
    # depends on the layer content
    with open(path, "rb") as src:
        with gzip.GzipFile(filename="", mode="wb", fileobj=target, mtime=0) as dst:
            shutil.copyfileobj(src, dst, CHUNK_SIZE)


class Layer(object):
    """
    A single image layer.

    Layers are immutable once created: changing the media type produces
    a copy sharing the same content. The opener returns a new readable
    stream with the blob (as stored, usually compressed) on every call.
    """

    def __init__(self, diff_id, digest, size, media_type, opener):
        self.diff_id = diff_id
        self._digest = digest
        self._size = size
        self.media_type = media_type
        self._opener = opener

    def __repr__(self):
        return "Layer(%s)" % self.diff_id

    @property
    def digest(self):
        return self._digest

    @property
    def size(self):
        return self._size

    def compressed(self):
        return self._opener()

    def uncompressed(self):
        stream = self._opener()

        if self.media_type.endswith("gzip"):
            return gzip.GzipFile(fileobj=stream, mode="rb")

        return stream

    def with_media_type(self, media_type):
        if media_type == self.media_type:
            return self

        layer = copy.copy(self)
        layer.media_type = media_type

        return layer

    def descriptor(self):
        descriptor = OrderedDict()
        descriptor["mediaType"] = self.media_type
        descriptor["size"] = self.size
        descriptor["digest"] = self.digest

        return descriptor


class FileLayer(Layer):
    """
    Layer read from a tar archive on the disk.

    Gzipped archives are used as-is. Plain tar archives are compressed
    the first time the blob digest or content is requested.
    """

    def __init__(self, path, media_type, diff_id=None):
        if not os.path.isfile(path):
            raise Error("Layer file '%s' does not exist" % path)

        self.path = path
        self._gzipped = _is_gzipped(path)
        self._blob = None

        if self._gzipped:
            with open(path, "rb") as f:
                digest, size = _hash_stream(f)

            def opener():
                return open(path, "rb")

        else:
            digest, size = None, None
            opener = self._open_compressed

        if diff_id is None:
            with open(path, "rb") as f:
                stream = gzip.GzipFile(fileobj=f) if self._gzipped else f
                diff_id, _ = _hash_stream(stream)

        super(FileLayer, self).__init__(diff_id, digest, size, media_type, opener)

    def _compressed_blob(self):
        if self._blob is None:
            blob = tempfile.SpooledTemporaryFile(max_size=64 * CHUNK_SIZE)
            _compress(self.path, blob)
            blob.seek(0)
            self._digest, self._size = _hash_stream(blob)
            self._blob = blob

        return self._blob

    def _open_compressed(self):
        blob = self._compressed_blob()
        blob.seek(0)

        # Every caller gets an independent stream over the shared blob
        return _BlobReader(blob)

    @property
    def digest(self):
        if self._digest is None:
            self._compressed_blob()

        return self._digest

    @property
    def size(self):
        if self._size is None:
            self._compressed_blob()

        return self._size


class _BlobReader(object):
    def __init__(self, blob):
        self._blob = blob
        self._position = 0

    def read(self, size=-1):
        self._blob.seek(self._position)
        data = self._blob.read(size)
        self._position += len(data)

        return data

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, etype, value, traceback):
        self.close()


def layer_from_file(path, media_type=media_types.OCI_LAYER, diff_id=None):
    """
    Creates a layer out of the tar archive at the provided path.

    The diff ID (sha256 of the uncompressed archive) is computed unless
    it is provided.
    """
    return FileLayer(path, media_type or media_types.OCI_LAYER, diff_id=diff_id)


def find_layer_with_diff_id(layers, diff_id, image_name=None):
    for layer in layers:
        if layer.diff_id == diff_id:
            return layer

    raise LayerNotFoundError(diff_id, image_name)


def append_to_config(config, diff_ids, created=None):
    """
    Returns a copy of the config with the diff IDs added on top of the
    root filesystem and one history entry per added layer.
    """
    config = copy.deepcopy(config)

    rootfs = config.setdefault("rootfs", OrderedDict(type="layers"))
    rootfs.setdefault("diff_ids", [])
    history = config.setdefault("history", [])

    for diff_id in diff_ids:
        rootfs["diff_ids"].append(diff_id)

        entry = OrderedDict()
        if created:
            entry["created"] = format_date(created)
        history.append(entry)

    return config

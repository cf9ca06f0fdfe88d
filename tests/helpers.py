import gzip
import io
import json
import os
import tarfile

from docker_imgutil.errors import RegistryError
from docker_imgutil.lib.common import sha256_digest


def create_layer(directory, name, content):
    """Creates a tar archive with a single file and returns its path"""

    path = os.path.join(directory, "%s.tar" % name)
    data = content.encode("utf-8")

    info = tarfile.TarInfo(name="%s.txt" % name)
    info.size = len(data)
    info.mtime = 0

    with tarfile.open(path, "w", format=tarfile.PAX_FORMAT) as tar:
        tar.addfile(info, io.BytesIO(data))

    return path


def gzip_file(path):
    target = "%s.gz" % path

    with open(path, "rb") as src, open(target, "wb") as f:
        with gzip.GzipFile(filename="", mode="wb", fileobj=f, mtime=0) as dst:
            dst.write(src.read())

    return target


def add_file(tar, name, data):
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    tar.addfile(info, io.BytesIO(data))


def docker_save_archive(layers):
    """
    Archive in the format produced by 'docker save', layers are
    (diff ID, archive content) pairs.
    """
    config = {"rootfs": {"type": "layers", "diff_ids": [d for d, _ in layers]}}
    manifest = [
        {
            "Config": "config.json",
            "RepoTags": None,
            "Layers": ["%s/layer.tar" % index for index in range(len(layers))],
        }
    ]

    archive = io.BytesIO()

    with tarfile.open(fileobj=archive, mode="w") as tar:
        add_file(tar, "manifest.json", json.dumps(manifest).encode("utf-8"))
        add_file(tar, "config.json", json.dumps(config).encode("utf-8"))

        for index, (_, content) in enumerate(layers):
            add_file(tar, "%s/layer.tar" % index, content)

    return archive.getvalue()


def file_digest(path):
    with open(path, "rb") as f:
        return sha256_digest(f.read())


class FakeRegistryClient(object):
    """In-memory registry used in place of RegistryClient"""

    def __init__(self):
        self.manifests = {}
        self.blobs = {}
        self.head_error = None
        self.push_error = None

    def _manifest(self, reference):
        key = (reference.context, reference.identifier)

        if key not in self.manifests:
            raise RegistryError("manifest %s not found" % reference, 404)

        return self.manifests[key]

    def head_manifest(self, reference):
        if self.head_error:
            raise self.head_error

        raw, media_type = self._manifest(reference)

        return {"mediaType": media_type, "digest": sha256_digest(raw), "size": len(raw)}

    def get_manifest(self, reference):
        return self._manifest(reference)

    def get_blob(self, reference, digest):
        return io.BytesIO(self.blobs[digest])

    def blob_exists(self, reference, digest):
        return digest in self.blobs

    def put_blob(self, reference, digest, data):
        if not isinstance(data, bytes):
            data = data.read()

        self.blobs[digest] = data

    def put_manifest(self, reference, raw_manifest, media_type):
        self.manifests[(reference.context, reference.identifier)] = (
            raw_manifest,
            media_type,
        )
        self.manifests[(reference.context, sha256_digest(raw_manifest))] = (
            raw_manifest,
            media_type,
        )

    def delete_manifest(self, reference):
        self._manifest(reference)

        for key in [key for key in self.manifests if key[0] == reference.context]:
            del self.manifests[key]

    def check_push_permission(self, reference):
        if self.push_error:
            raise self.push_error

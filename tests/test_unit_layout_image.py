import json
import os
import shutil
import tempfile
import unittest

import mock

from docker_imgutil import media_types
from docker_imgutil.errors import (
    BaseLayerNotFoundError,
    Error,
    IncompatibleBaseError,
    LayerNotFoundError,
    MissingRequiredFieldError,
    SaveError,
)
from docker_imgutil.identifier import DigestIdentifier
from docker_imgutil.layout import (
    REF_NAME_ANNOTATION,
    LayoutImage,
    append_image,
    empty_index,
    read_index,
    write_index,
)
from docker_imgutil.media_types import MediaTypes
from docker_imgutil.layer import layer_from_file
from docker_imgutil.v1_image import Platform, empty_image

from tests.helpers import create_layer, file_digest


class LayoutTestCase(unittest.TestCase):
    def setUp(self):
        self.log = mock.Mock()
        self.directory = tempfile.mkdtemp()
        self.layer_a = create_layer(self.directory, "a", "content of a")
        self.layer_b = create_layer(self.directory, "b", "content of b")
        self.layer_c = create_layer(self.directory, "c", "content of c")

    def tearDown(self):
        shutil.rmtree(self.directory)

    def path(self, name):
        return os.path.join(self.directory, name)

    def save_base(self, name="base"):
        base = LayoutImage(self.log, self.path(name))
        base.add_layer(self.layer_a)
        base.set_env("PATH", "/usr/bin")
        base.save()

        return base


class TestNewImage(LayoutTestCase):
    def test_should_start_from_empty_image(self):
        image = LayoutImage(self.log, self.path("app"))

        self.assertEqual(image.os(), "linux")
        self.assertEqual(image.architecture(), "amd64")
        self.assertEqual(image.underlying_image().layers(), [])
        self.assertFalse(image.found())

    def test_should_use_requested_platform(self):
        image = LayoutImage(
            self.log,
            self.path("app"),
            platform=Platform("linux", "arm", variant="v7"),
        )

        self.assertEqual(image.architecture(), "arm")
        self.assertEqual(image.variant(), "v7")

    def test_should_default_to_oci_media_types(self):
        image = LayoutImage(self.log, self.path("app"))

        self.assertEqual(
            image.underlying_image().media_type(), media_types.OCI_MANIFEST
        )

    def test_should_start_from_empty_image_when_base_is_missing(self):
        image = LayoutImage(
            self.log, self.path("app"), base_image_path=self.path("missing")
        )

        self.assertEqual(image.underlying_image().layers(), [])

    def test_should_fail_on_missing_os(self):
        image = LayoutImage(self.log, self.path("app"))
        image.set_os("")

        with self.assertRaises(MissingRequiredFieldError):
            image.os()


class TestSettersAndGetters(LayoutTestCase):
    def setUp(self):
        super(TestSettersAndGetters, self).setUp()
        self.image = LayoutImage(self.log, self.path("app"))

    def test_should_set_runtime_config(self):
        self.image.set_entrypoint("/bin/sh", "-c")
        self.image.set_cmd("echo", "hello")
        self.image.set_working_dir("/app")
        self.image.set_env("HOME", "/root")
        self.image.set_label("version", "1")

        self.assertEqual(self.image.entrypoint(), ["/bin/sh", "-c"])
        self.assertEqual(self.image.cmd(), ["echo", "hello"])
        self.assertEqual(self.image.working_dir(), "/app")
        self.assertEqual(self.image.env("HOME"), "/root")
        self.assertEqual(self.image.label("version"), "1")
        self.assertEqual(self.image.labels(), {"version": "1"})

    def test_should_set_platform(self):
        self.image.set_os("windows")
        self.image.set_architecture("arm64")
        self.image.set_os_version("10.0.17763.1040")
        self.image.set_variant("v8")

        self.assertEqual(self.image.os(), "windows")
        self.assertEqual(self.image.architecture(), "arm64")
        self.assertEqual(self.image.os_version(), "10.0.17763.1040")
        self.assertEqual(self.image.variant(), "v8")

    def test_remove_label(self):
        self.image.set_label("a", "1")
        self.image.remove_label("a")
        self.image.remove_label("missing")

        self.assertEqual(self.image.labels(), {})

    def test_rename(self):
        self.image.rename(self.path("other"))

        self.assertEqual(self.image.name, self.path("other"))

    def test_should_annotate_ref_name(self):
        self.assertIsNone(self.image.get_annotate_ref_name())

        self.image.annotate_ref_name("my-tag")

        self.assertEqual(self.image.get_annotate_ref_name(), "my-tag")


class TestLayers(LayoutTestCase):
    def test_should_add_layers(self):
        image = LayoutImage(self.log, self.path("app"))
        image.add_layer(self.layer_a)
        image.add_layer(self.layer_b)

        self.assertEqual(image.top_layer(), file_digest(self.layer_b))
        config = image.underlying_image().config_file()
        self.assertEqual(
            config["rootfs"]["diff_ids"],
            [file_digest(self.layer_a), file_digest(self.layer_b)],
        )
        self.assertEqual(len(config["history"]), 2)

    def test_top_layer_of_empty_image_should_fail(self):
        image = LayoutImage(self.log, self.path("app"))

        with self.assertRaises(Error):
            image.top_layer()

    def test_should_add_layer_with_known_diff_id(self):
        image = LayoutImage(self.log, self.path("app"))
        image.add_layer_with_diff_id(self.layer_a, "sha256:known")

        self.assertEqual(image.top_layer(), "sha256:known")

    def test_should_reuse_layer_from_previous_image(self):
        self.save_base("previous")

        image = LayoutImage(
            self.log, self.path("app"), previous_image_path=self.path("previous")
        )
        image.reuse_layer(file_digest(self.layer_a))

        self.assertEqual(image.top_layer(), file_digest(self.layer_a))
        self.assertEqual(
            image.underlying_image().layers()[0].media_type, media_types.OCI_LAYER
        )

    def test_reusing_missing_layer_should_keep_image_unchanged(self):
        self.save_base("previous")

        image = LayoutImage(
            self.log, self.path("app"), previous_image_path=self.path("previous")
        )
        image.add_layer(self.layer_b)
        before = image.underlying_image()

        with self.assertRaises(LayerNotFoundError):
            image.reuse_layer("sha256:missing")

        self.assertIs(image.underlying_image(), before)

    def test_should_read_layer_content(self):
        image = LayoutImage(self.log, self.path("app"))
        image.add_layer(self.layer_a)

        with image.get_layer(file_digest(self.layer_a)) as stream:
            self.assertEqual(stream.read(), open(self.layer_a, "rb").read())

    def test_should_read_layer_content_of_saved_image(self):
        self.save_base()

        image = LayoutImage(
            self.log, self.path("app"), base_image_path=self.path("base")
        )

        with image.get_layer(file_digest(self.layer_a)) as stream:
            self.assertEqual(stream.read(), open(self.layer_a, "rb").read())


class TestSave(LayoutTestCase):
    def test_should_write_layout(self):
        image = LayoutImage(self.log, self.path("app"))
        image.add_layer(self.layer_a)
        image.save()

        self.assertTrue(image.found())
        self.assertTrue(image.valid())
        self.assertTrue(os.path.isfile(self.path("app/oci-layout")))

        index = read_index(self.path("app"))
        self.assertEqual(len(index["manifests"]), 1)
        self.assertEqual(
            index["manifests"][0]["mediaType"], media_types.OCI_MANIFEST
        )
        self.assertEqual(
            index["manifests"][0]["platform"], {"architecture": "amd64", "os": "linux"}
        )

    def test_should_normalize_creation_time(self):
        image = LayoutImage(self.log, self.path("app"))
        image.add_layer(self.layer_a)
        image.add_layer(self.layer_b)
        image.save()

        config = image.underlying_image().config_file()
        self.assertEqual(config["created"], "1980-01-01T00:00:01Z")
        self.assertEqual(
            config["history"],
            [{"created": "1980-01-01T00:00:01Z"}, {"created": "1980-01-01T00:00:01Z"}],
        )
        self.assertEqual(image.created_at().year, 1980)

    def test_should_read_back_saved_image(self):
        image = LayoutImage(self.log, self.path("app"))
        image.add_layer(self.layer_a)
        image.set_label("a", "1")
        image.save()

        loaded = LayoutImage(
            self.log, self.path("other"), base_image_path=self.path("app")
        )

        self.assertEqual(loaded.label("a"), "1")
        self.assertEqual(loaded.top_layer(), file_digest(self.layer_a))
        self.assertEqual(loaded.identifier(), image.identifier())

    def test_identifier_should_be_stable(self):
        image = LayoutImage(self.log, self.path("app"))
        image.add_layer(self.layer_a)

        first = image.identifier()

        self.assertIsInstance(first, DigestIdentifier)
        self.assertEqual(image.identifier(), first)

        image.set_label("a", "1")

        self.assertNotEqual(image.identifier(), first)

    def test_should_save_to_additional_paths(self):
        image = LayoutImage(self.log, self.path("app"))
        image.add_layer(self.layer_a)
        image.save(self.path("copy"))

        self.assertTrue(os.path.isfile(self.path("app/index.json")))
        self.assertTrue(os.path.isfile(self.path("copy/index.json")))

    def test_should_report_failed_destinations(self):
        blocker = self.path("file")
        open(blocker, "w").close()
        failing = os.path.join(blocker, "sub")

        image = LayoutImage(self.log, self.path("app"))
        image.add_layer(self.layer_a)

        with self.assertRaises(SaveError) as cm:
            image.save_as(self.path("ok"), failing)

        self.assertEqual([e.image_name for e in cm.exception.errors], [failing])
        self.assertTrue(os.path.isfile(self.path("ok/index.json")))

    def test_should_annotate_index(self):
        image = LayoutImage(self.log, self.path("app"))
        image.annotate_ref_name("v1")
        image.save()

        index = read_index(self.path("app"))

        self.assertEqual(
            index["manifests"][0]["annotations"], {REF_NAME_ANNOTATION: "v1"}
        )

    def test_should_save_docker_media_types(self):
        image = LayoutImage(
            self.log,
            self.path("app"),
            requested_media_types=MediaTypes.DOCKER,
        )
        image.add_layer(self.layer_a)
        image.save()

        index = read_index(self.path("app"))
        digest = index["manifests"][0]["digest"]

        with open(self.path("app/blobs/sha256/%s" % digest[7:])) as f:
            manifest = json.load(f)

        self.assertEqual(manifest["mediaType"], media_types.DOCKER_MANIFEST_SCHEMA2)
        self.assertEqual(manifest["layers"][0]["mediaType"], media_types.DOCKER_LAYER)

    def test_should_delete_image(self):
        image = LayoutImage(self.log, self.path("app"))
        image.save()
        image.delete()

        self.assertFalse(os.path.exists(self.path("app")))

    def test_missing_manifest_blob_should_make_image_invalid(self):
        image = LayoutImage(self.log, self.path("app"))
        image.add_layer(self.layer_a)
        image.save()

        digest = image.underlying_image().digest()
        os.remove(self.path("app/blobs/sha256/%s" % digest[7:]))

        self.assertFalse(image.valid())


class TestPlatformSelection(LayoutTestCase):
    def setUp(self):
        super(TestPlatformSelection, self).setUp()

        write_index(self.path("multi"), empty_index())

        for platform, layer in (
            (Platform("linux", "amd64"), self.layer_a),
            (Platform("linux", "arm64"), self.layer_b),
        ):
            image = empty_image(platform, MediaTypes.OCI).append_layers(
                [layer_from_file(layer)]
            )
            append_image(self.path("multi"), image)

    def test_should_select_matching_platform(self):
        image = LayoutImage(
            self.log,
            self.path("app"),
            base_image_path=self.path("multi"),
            platform=Platform("linux", "arm64"),
        )

        self.assertEqual(image.architecture(), "arm64")
        self.assertEqual(image.top_layer(), file_digest(self.layer_b))

    def test_should_fail_when_no_platform_matches(self):
        with self.assertRaises(Error):
            LayoutImage(
                self.log,
                self.path("app"),
                base_image_path=self.path("multi"),
                platform=Platform("windows", "amd64"),
            )


class TestRebase(LayoutTestCase):
    def test_should_rebase_on_new_base(self):
        self.save_base("old-base")

        new_base = LayoutImage(
            self.log, self.path("new-base"), platform=Platform("linux", "arm64")
        )
        new_base.add_layer(self.layer_c)

        image = LayoutImage(
            self.log, self.path("app"), base_image_path=self.path("old-base")
        )
        image.add_layer(self.layer_b)
        image.rebase(file_digest(self.layer_a), new_base)

        diff_ids = image.underlying_image().config_file()["rootfs"]["diff_ids"]

        self.assertEqual(diff_ids, [file_digest(self.layer_c), file_digest(self.layer_b)])
        self.assertEqual(image.architecture(), "arm64")

    def test_should_fail_for_unknown_base_layer(self):
        image = LayoutImage(self.log, self.path("app"))
        image.add_layer(self.layer_a)

        with self.assertRaises(BaseLayerNotFoundError):
            image.rebase("sha256:missing", LayoutImage(self.log, self.path("new")))

    def test_should_fail_for_other_backend(self):
        image = LayoutImage(self.log, self.path("app"))

        with self.assertRaises(IncompatibleBaseError):
            image.rebase("sha256:1", mock.Mock())


if __name__ == "__main__":
    unittest.main()

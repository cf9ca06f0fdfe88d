class Error(Exception):
    code = 1


class ConfigUnavailableError(Error):
    code = 2


class MissingRequiredFieldError(Error):
    code = 3


class LayerNotFoundError(Error):
    code = 4

    def __init__(self, diff_id, image_name=None):
        self.diff_id = diff_id
        self.image_name = image_name

        if image_name:
            message = f"previous image of '{image_name}' did not have layer with diff id '{diff_id}'"
        else:
            message = f"previous image did not have layer with diff id '{diff_id}'"

        super(LayerNotFoundError, self).__init__(message)


class BaseLayerNotFoundError(Error):
    code = 5


class IncompatibleBaseError(Error):
    code = 6


class UnsupportedOperationError(Error, NotImplementedError):
    code = 7


class ValidationError(Error):
    code = 8


class RegistryError(Error):
    code = 9

    def __init__(self, message, status_code=None):
        super(RegistryError, self).__init__(message)
        self.status_code = status_code


class SaveDiagnostic(object):
    def __init__(self, image_name, cause):
        self.image_name = image_name
        self.cause = cause

    def __repr__(self):
        return "SaveDiagnostic(%r, %r)" % (self.image_name, self.cause)


class SaveError(Error):
    code = 10

    def __init__(self, errors):
        self.errors = list(errors)

        messages = [
            "[%s: %s]" % (diagnostic.image_name, diagnostic.cause)
            for diagnostic in self.errors
        ]

        super(SaveError, self).__init__(
            "failed to write image to the following tags: %s" % ",".join(messages)
        )

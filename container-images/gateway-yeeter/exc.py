class ApplicationError(Exception):
    """Base class for errors raised by the webhook."""


class DecodeError(ApplicationError):
    """The admission review or the embedded pod could not be decoded."""


class MissingRequestError(DecodeError):
    """The admission review does not contain a request."""


class AnnotationParseError(ApplicationError):
    """The networks annotation on a pod is not valid."""


class SerializationError(ApplicationError):
    """A patch or response could not be encoded."""

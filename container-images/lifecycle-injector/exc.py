class ApplicationError(Exception):
    pass


class DecodeError(ApplicationError):
    """The AdmissionReview or its embedded Pod could not be decoded.

    `uid` holds whatever request UID could be recovered from the payload, so
    that the denial can still be matched to the request.
    """

    def __init__(self, message, uid=""):
        super().__init__(message)
        self.uid = uid


class PatchError(ApplicationError):
    pass

from contextlib import contextmanager


class XP3Error(Exception):
    """Base class for XP3-specific errors."""


# Stream level
class XP3IOError(XP3Error, OSError):
    """Short read, undecodable deflate data, or a failure of the underlying stream."""


# Container structure
class InvalidFileError(XP3Error):
    pass


class InvalidHeaderError(XP3Error):
    pass


class InvalidFileIndexHeaderError(XP3Error):
    pass


class InvalidFileIndexError(XP3Error):
    pass


class NameTooLongError(InvalidFileIndexError):
    pass


# Lookup/integrity
class FileNotFoundInArchive(XP3Error, KeyError):
    def __str__(self) -> str:
        return Exception.__str__(self)


class ChecksumMismatchError(XP3Error):
    pass


@contextmanager
def wrap_os_errors(action: str):
    """Re-raise stream ``OSError``s as ``XP3IOError``; XP3 errors pass through."""
    try:
        yield
    except XP3Error:
        raise
    except OSError as exc:
        raise XP3IOError(f"{action}: {exc}") from exc

from importlib.metadata import version as _distribution_version


__version__ = version = _distribution_version("sqla-preload")
__version_tuple__ = version_tuple = tuple(
    int(part) if part.isdigit() else part for part in __version__.split(".")
)

"""Version of the installed ``pydrel`` package, kept in the ``VERSION`` file next to this module."""

import pathlib

VERSION_PATH = pathlib.Path(__file__).with_name("VERSION")


def read_version(path: pathlib.Path = VERSION_PATH) -> str:
    if not path.is_file():
        return "0.0.0"
    return path.read_text(encoding="utf-8").strip()


__version__ = read_version()

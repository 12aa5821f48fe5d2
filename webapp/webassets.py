"""Prefixed views of asset directories and serving of their files."""

from __future__ import annotations

import functools
import os
import posixpath
import shutil
from http import HTTPStatus
from pathlib import Path
from typing import BinaryIO, Union

from importlib.abc import Traversable

_Root = Union[str, "os.PathLike[str]", Traversable]


class RelativeFS:
    """A read-only view of root in which every name is resolved under prefix.

    Useful when assets live under, say, 'assets/' but are served from the URL root,
    so that '/index.html' maps to 'assets/index.html'.
    """

    def __init__(self, prefix: str, root: _Root) -> None:
        self.prefix = prefix
        self.root = Path(root) if isinstance(root, (str, os.PathLike)) else root

    def _resolve(self, name: str) -> Traversable:
        full = posixpath.normpath(posixpath.join(self.prefix, name))
        if full.startswith("/") or full == ".." or full.startswith("../"):
            raise ValueError(f"open {full}: invalid argument")
        parts = [part for part in full.split("/") if part not in ("", ".")]
        return functools.reduce(lambda node, part: node.joinpath(part), parts, self.root)

    def open(self, name: str) -> BinaryIO:
        """Open the file prefix/name for reading in binary mode."""
        return self._resolve(name).open("rb")


def relative_fs(prefix: str, root: _Root) -> RelativeFS:
    """Return a view of root with prefix prepended to every name opened from it."""
    return RelativeFS(prefix, root)


def serve_file(writer, fs: RelativeFS, name: str) -> HTTPStatus:
    """Copy the file name from fs to writer and return HTTPStatus.OK.

    Failures are re-raised with an http_status attribute: NOT_FOUND when the file
    does not exist, INTERNAL_SERVER_ERROR otherwise.
    """
    try:
        source = fs.open(name)
    except FileNotFoundError as exc:
        exc.http_status = HTTPStatus.NOT_FOUND
        raise
    except (OSError, ValueError) as exc:
        exc.http_status = HTTPStatus.INTERNAL_SERVER_ERROR
        raise
    with source:
        try:
            shutil.copyfileobj(source, writer)
        except (OSError, ValueError) as exc:
            exc.http_status = HTTPStatus.INTERNAL_SERVER_ERROR
            raise
    return HTTPStatus.OK
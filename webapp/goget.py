"""Serving of go-get meta tags that map import paths to source repositories."""

from __future__ import annotations

import html
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Iterable, Mapping
from urllib.parse import parse_qs, parse_qsl, urlsplit

import yaml

SUPPORTED_VCS = frozenset({"git", "hg", "svn", "bzr"})
_SUPPORTED_SCHEMES = frozenset({"https", "http", "ssh", "git"})

_PAGE = """<!DOCTYPE html>
<html>
<head>
    <meta name="go-import" content="{import_path} {vcs} {repo_url}">
</head>
<body>
    <a href="{repo_url}">Redirecting to source repository...</a>
</body>
</html>"""


@dataclass(frozen=True)
class Spec:
    """A go-get meta tag: the repository root path, its version control system and URL."""

    import_path: str = ""
    vcs: str = ""
    repo_url: str = ""

    def __str__(self) -> str:
        return f"{self.import_path} {self.vcs} {self.repo_url}"

    @property
    def import_path_with_slash(self) -> str:
        """The import path followed by a slash, the prefix of every sub-package."""
        return self.import_path + "/"

    def _validated(self) -> Spec:
        try:
            parts = urlsplit(self.repo_url)
        except ValueError as exc:
            raise ValueError(f"{self}: invalid repo URL: {exc}") from exc
        if parts.scheme not in _SUPPORTED_SCHEMES:
            raise ValueError(f"{self}: invalid scheme for repo URL {parts.scheme}")
        if not parts.netloc.rpartition("@")[2]:
            raise ValueError(f"{self}: no host in repo URL")
        if parse_qsl(parts.query, keep_blank_values=True):
            raise ValueError(f"{self}: repo URL must not contain query parameters")
        if self.vcs not in SUPPORTED_VCS:
            raise ValueError(f'{self}: unsupported VCS "{self.vcs}"')
        if self.import_path.endswith("/"):
            return replace(self, import_path=self.import_path[:-1])
        return self

    def _render(self) -> bytes:
        return _PAGE.format(
            import_path=html.escape(self.import_path),
            vcs=html.escape(self.vcs),
            repo_url=html.escape(self.repo_url),
        ).encode("utf-8")


class Handler:
    """Serves go-get meta tags for the import paths of its specifications."""

    def __init__(self, specs: Iterable[Spec] = ()) -> None:
        self.specs: tuple[Spec, ...] = tuple(specs)

    def _match(self, import_path: str) -> Spec | None:
        for spec in self.specs:
            if import_path == spec.import_path or import_path.startswith(
                spec.import_path_with_slash
            ):
                return spec
        return None

    def go_get_handler(self, next_app: Callable) -> Callable:
        """Wrap next_app so that requests with go-get=1 are answered with meta tags.

        Requests without the query parameter are passed to next_app; those that
        match no specification get a 404.
        """

        def app(environ: dict, start_response: Callable) -> Iterable[bytes]:
            values = parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True)
            if values.get("go-get", [""])[0] != "1":
                return next_app(environ, start_response)
            host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")
            path = environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")
            spec = self._match(host + path)
            if spec is None:
                body = b"404 page not found\n"
                start_response(
                    "404 Not Found",
                    [
                        ("Content-Type", "text/plain; charset=utf-8"),
                        ("X-Content-Type-Options", "nosniff"),
                        ("Content-Length", str(len(body))),
                    ],
                )
                return [body]
            body = spec._render()
            start_response(
                "200 OK",
                [
                    ("Content-Type", "text/html; charset=utf-8"),
                    ("Content-Length", str(len(body))),
                ],
            )
            return [body]

        return app


def new_handler(specs: Iterable[Spec]) -> Handler:
    """Validate specs and return a Handler serving them; trailing slashes are normalised."""
    return Handler([spec._validated() for spec in specs])


def _scalar(value: object, key: str, source: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        raise ValueError(f"{source}: field {key!r} must be a scalar")
    return str(value)


def _spec_from_mapping(item: object, source: str) -> Spec:
    if not isinstance(item, Mapping):
        raise ValueError(f"{source}: each specification must be a mapping")
    return Spec(
        import_path=_scalar(item.get("import"), "import", source),
        vcs=_scalar(item.get("vcs"), "vcs", source),
        repo_url=_scalar(item.get("repo"), "repo", source),
    )


def new_handler_from_file(path: str | Path) -> Handler:
    """Load a YAML list of specifications (keys import, vcs, repo) and return a Handler."""
    text = Path(path).read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"{path}: invalid YAML: {exc}") from exc
    if data is None:
        data = []
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of specifications")
    return new_handler([_spec_from_mapping(item, str(path)) for item in data])
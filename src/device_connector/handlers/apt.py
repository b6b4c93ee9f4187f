"""
APT capabilities for Device Connector.

  /apt/list          installed packages (dpkg-query), paginated, optional search
  /apt/repos/list    repositories from sources.list and sources.list.d/*.list
  /apt/repos/add     append a repository line
  /apt/repos/remove  delete matching repository lines

Only one-line-style .list files are read; deb822 .sources files are not.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from device_connector.core.cmd_context import CommandResult, ResponseEmitter
from device_connector.core.status import SetPackages, StatusView
from device_connector.errors import HandlerError

logger = logging.getLogger(__name__)

PAGE_SIZE = 30
DPKG_TIMEOUT_S = 60
DEFAULT_LIST_FILE = "device-connector.list"
_DPKG_FORMAT = "${Package}\t${Version}\t${Status}\n"
# bracketed part may hold spaces, as in cdrom:[Debian GNU/Linux 11 ...]/
_URI_RE = re.compile(r"[^\s\[]*(?:\[[^\]]*\])?\S*")


@dataclass(frozen=True, slots=True)
class AptRepository:
    uri: str
    distribution: str
    components: list[str] = field(default_factory=list)
    enabled: bool = True
    source_repo: bool = False
    options: str = ""
    comment: str = ""
    file: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_line(self) -> str:
        parts = ["deb-src" if self.source_repo else "deb"]
        if self.options:
            parts.append(f"[{self.options}]")
        parts += [self.uri, self.distribution, *self.components]
        line = " ".join(parts)
        if self.comment:
            line += f" # {self.comment}"
        return line if self.enabled else f"# {line}"

    def same_source(self, other: "AptRepository") -> bool:
        return (
            self.uri.rstrip("/") == other.uri.rstrip("/")
            and self.distribution == other.distribution
            and self.source_repo == other.source_repo
            and (not other.components or sorted(self.components) == sorted(other.components))
        )

    @classmethod
    def from_request(cls, data: Any) -> "AptRepository":
        if not isinstance(data, dict):
            raise HandlerError("'repository' must be an object")
        uri = data.get("uri")
        dist = data.get("distribution")
        if not isinstance(uri, str) or not uri or not isinstance(dist, str) or not dist:
            raise HandlerError("repository requires 'uri' and 'distribution'")
        components = data.get("components") or []
        if isinstance(components, str):
            components = components.split()
        if not isinstance(components, list) or not all(isinstance(c, str) for c in components):
            raise HandlerError("'components' must be a list of strings")
        for value in (uri, dist, *components):
            if any(ch.isspace() for ch in value) or "#" in value:
                raise HandlerError(f"invalid repository field: {value!r}")
        return cls(
            uri=uri,
            distribution=dist,
            components=list(components),
            enabled=bool(data.get("enabled", True)),
            source_repo=bool(data.get("source_repo", False)),
            options=str(data.get("options") or ""),
            comment=str(data.get("comment") or ""),
        )


def _split_uri(rest: str) -> tuple[str, str]:
    """First URI token of rest; a cdrom:[label with spaces]/ URI counts as one token."""
    m = _URI_RE.match(rest)
    if m is None:
        return "", ""
    return m.group(0), rest[m.end():].strip()


def parse_sources_line(line: str, file: str = "") -> Optional[AptRepository]:
    """Parse one sources.list line; returns None for blanks and plain comments."""
    text = line.strip()
    enabled = True
    if text.startswith("#"):
        enabled = False
        text = text.lstrip("#").strip()
    if not text.startswith(("deb ", "deb-src ", "deb\t", "deb-src\t")):
        return None

    comment = ""
    if "#" in text:
        text, comment = text.split("#", 1)
        comment = comment.strip()

    parts = text.split(None, 1)
    if len(parts) < 2:
        return None
    kind, rest = parts[0], parts[1].strip()
    options = ""
    if rest.startswith("["):
        end = rest.find("]")
        if end < 0:
            return None
        options = rest[1:end].strip()
        rest = rest[end + 1:].strip()

    uri, rest = _split_uri(rest)
    fields_ = rest.split()
    if not uri or not fields_:
        return None
    return AptRepository(
        uri=uri,
        distribution=fields_[0],
        components=fields_[1:],
        enabled=enabled,
        source_repo=kind == "deb-src",
        options=options,
        comment=comment,
        file=file,
    )


def _source_files(root: Path) -> list[Path]:
    files = []
    main = root / "sources.list"
    if main.is_file():
        files.append(main)
    parts = root / "sources.list.d"
    if parts.is_dir():
        files.extend(sorted(p for p in parts.glob("*.list") if p.is_file()))
    return files


def list_repositories(root: Path) -> list[AptRepository]:
    repos: list[AptRepository] = []
    for path in _source_files(root):
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            logger.warning("Cannot read %s: %s", path, exc)
            continue
        for line in lines:
            repo = parse_sources_line(line, str(path))
            if repo is not None:
                repos.append(repo)
    return repos


def parse_dpkg_output(output: str) -> list[dict[str, str]]:
    packages = []
    for line in output.splitlines():
        name, _, rest = line.partition("\t")
        version, _, state = rest.partition("\t")
        if not name or not state.endswith(" installed"):
            continue
        packages.append({"name": name, "version": version, "status": "installed"})
    return packages


class AptHandlers:
    """APT handlers bound to one APT configuration root (normally /etc/apt)."""

    def __init__(self, root: str | Path = "/etc/apt") -> None:
        self.root = Path(root)
        self._files_lock = threading.Lock()

    def on_repos_list(self, request: dict[str, Any], status: StatusView, emit: ResponseEmitter) -> list[dict[str, Any]]:
        return [r.to_dict() for r in list_repositories(self.root)]

    def on_repos_add(self, request: dict[str, Any], status: StatusView, emit: ResponseEmitter) -> dict[str, Any]:
        repo = AptRepository.from_request(request.get("repository"))
        file_name = request.get("file") or DEFAULT_LIST_FILE
        if not isinstance(file_name, str) or "/" in file_name or not file_name.endswith(".list"):
            raise HandlerError("'file' must be a plain *.list file name")

        with self._files_lock:
            if any(r.same_source(repo) for r in list_repositories(self.root)):
                raise HandlerError(f"repository already present: {repo.uri} {repo.distribution}")
            target = self.root / "sources.list.d" / file_name
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with target.open("a", encoding="utf-8") as f:
                    f.write(repo.to_line() + "\n")
            except OSError as exc:
                raise HandlerError(f"cannot write {target}: {exc}") from exc

        logger.info("Added APT repository %s %s to %s", repo.uri, repo.distribution, target)
        return {"ok": True, "repository": {**repo.to_dict(), "file": str(target)}}

    def on_repos_remove(self, request: dict[str, Any], status: StatusView, emit: ResponseEmitter) -> dict[str, Any]:
        wanted = AptRepository.from_request(request.get("repository"))
        removed = 0
        with self._files_lock:
            for path in _source_files(self.root):
                try:
                    lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
                except OSError as exc:
                    raise HandlerError(f"cannot read {path}: {exc}") from exc
                kept = []
                for line in lines:
                    repo = parse_sources_line(line)
                    if repo is not None and repo.same_source(wanted):
                        removed += 1
                        continue
                    kept.append(line)
                if len(kept) != len(lines):
                    try:
                        path.write_text("".join(kept), encoding="utf-8")
                    except OSError as exc:
                        raise HandlerError(f"cannot write {path}: {exc}") from exc

        if not removed:
            raise HandlerError(f"repository not found: {wanted.uri} {wanted.distribution}")
        logger.info("Removed %d APT repository line(s) for %s", removed, wanted.uri)
        return {"ok": True, "removed": removed}

    def on_packages_list(self, request: dict[str, Any], status: StatusView, emit: ResponseEmitter) -> CommandResult:
        """
        Request: {"search": "python", "page": 0}
        Response: {"packages": [...], "page": 0, "pages": N}
        """
        search = request.get("search") or ""
        page = request.get("page", 0)
        if not isinstance(search, str):
            raise HandlerError("'search' must be a string")
        if not isinstance(page, int) or isinstance(page, bool) or page < 0:
            raise HandlerError("'page' must be a non-negative integer")

        cmd = ["dpkg-query", "-W", f"-f={_DPKG_FORMAT}"]
        try:
            r = subprocess.run(cmd, capture_output=True, text=True, timeout=DPKG_TIMEOUT_S)
        except FileNotFoundError as exc:
            raise HandlerError("dpkg-query not available on this device") from exc
        except subprocess.TimeoutExpired as exc:
            raise HandlerError(f"{shlex.join(cmd)} timed out") from exc
        if r.returncode != 0:
            raise HandlerError(f"dpkg-query failed: {(r.stderr or '').strip() or r.returncode}")

        installed = parse_dpkg_output(r.stdout)
        matches = [p for p in installed if search.lower() in p["name"].lower()]
        pages = max(1, -(-len(matches) // PAGE_SIZE))
        chunk = matches[page * PAGE_SIZE:(page + 1) * PAGE_SIZE]
        return CommandResult(
            payload={"packages": chunk, "page": page, "pages": pages},
            intents=(SetPackages(tuple(installed)),),
        )

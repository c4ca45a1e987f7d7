#!/usr/bin/env python3
"""
Install prebuilt programs from GitHub releases

``grip`` looks packages up in a set of prioritized registries, each mapping
package names to GitHub repositories, then lets the user pick a release and
one of its assets.  The chosen asset is downloaded, unpacked if it is an
archive, recorded in a ledger of installed packages, and its directory is
added to the user's ``PATH``.  It requires no third-party Python libraries.
"""

from __future__ import annotations

__version__ = "0.1.0"
__author__ = "The grip Developers"
__license__ = "MIT"

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
import ctypes
from dataclasses import InitVar, dataclass, field
from functools import total_ordering
from getopt import GetoptError, getopt, gnu_getopt
from http.client import HTTPException, HTTPMessage
from itertools import groupby
import json
import logging
from operator import attrgetter
import os
import os.path
from pathlib import Path
import platform
import re
import shlex
import shutil
import stat
import subprocess
import sys
import tarfile
import tempfile
import textwrap
from typing import IO, Any, ClassVar, NamedTuple, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import (
    HTTPRedirectHandler,
    Request,
    build_opener,
    install_opener,
    urlopen,
)
from zipfile import BadZipFile, ZipFile

log = logging.getLogger("grip_installer")

SYSTEM = platform.system()
ON_LINUX = SYSTEM == "Linux"
ON_MACOS = SYSTEM == "Darwin"
ON_WINDOWS = SYSTEM == "Windows"
ON_POSIX = ON_LINUX or ON_MACOS

USER_AGENT = "grip-installer/{} {}/{}".format(
    __version__,
    platform.python_implementation(),
    platform.python_version(),
)

GITHUB_API_URL = "https://api.github.com"

DEFAULT_REGISTRY_NAME = "default"
DEFAULT_REGISTRY_URL = (
    "https://raw.githubusercontent.com/grip-pm/registry/main/registry.json"
)

ARCHIVE_SUFFIXES = (".zip", ".tar.gz", ".tgz")

#: Marker appended to every line that grip writes to a shell start-up file
PATH_MARKER = "# added by grip"

PATH_LINE_RGX = re.compile(
    r'export PATH="\$PATH":(?P<dir>.+?)\s+' + re.escape(PATH_MARKER)
)

CHUNK_SIZE = 65536

LINK_RGX = re.compile(r"<(?P<url>[^>]*)>(?P<params>[^,<]*)")
REL_RGX = re.compile(r'\brel\s*=\s*"?(?P<rel>[^";]+)"?')


class GripError(Exception):
    """Base class for all errors reported to the user as a one-line message"""

    pass


class PackageNotFound(GripError):
    """Raised when no configured registry defines the requested package"""

    pass


class NoReleases(GripError):
    """Raised when a package's repository has no published releases"""

    pass


class VersionNotFound(GripError):
    """Raised when an explicitly requested release tag does not exist"""

    pass


class AssetNotFound(GripError):
    """Raised when an explicitly requested asset is not in the release"""

    pass


class NetworkError(GripError):
    """Raised when fetching a remote resource fails"""

    pass


class FilesystemError(GripError):
    """Raised when creating, writing, renaming, or removing a local file fails"""

    pass


class ArchiveError(GripError):
    """Raised when a downloaded archive is corrupt, unsafe, or unsupported"""

    pass


class RegistryAlreadyExists(GripError):
    pass


class RegistryNotFound(GripError):
    pass


class CannotRemoveDefaultRegistry(GripError):
    pass


class InvalidRegistryName(GripError):
    """
    Raised for a registry name that cannot be used as the name of its cache
    directory
    """

    pass


class InvalidRemoteMetadata(GripError):
    """
    Raised when a registry index or a GitHub API response lacks an expected
    field or is not valid JSON
    """

    pass


class SelectionError(GripError):
    """Raised when a release or asset cannot be chosen without user input"""

    pass


class LockError(GripError):
    """Raised when another grip process holds the data directory lock"""

    pass


class PackageNotInstalled(GripError):
    pass


class ConfigError(GripError):
    """Raised when the configuration document cannot be parsed"""

    pass


def parse_log_level(level: str) -> int:
    """
    Convert a log level name (case-insensitive) or number to its numeric value
    """
    try:
        lv = int(level)
    except ValueError:
        levelup = level.upper()
        if levelup in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            ll = getattr(logging, levelup)
            assert isinstance(ll, int)
            return ll
        else:
            raise UsageError(f"Invalid log level: {level!r}")
    else:
        return lv


@dataclass
class Immediate:
    """
    Superclass for constructs returned by the argument-parsing code
    representing options that are handled "immediately" (i.e., --version and
    --help)
    """

    pass


@dataclass
class VersionRequest(Immediate):
    """`Immediate` representing a ``--version`` option"""

    pass


@dataclass
class HelpRequest(Immediate):
    """`Immediate` representing a ``--help`` option"""

    #: The command for which help was requested, or `None` if the ``--help``
    #: option was given at the global level
    command: Optional[str]


SHORT_RGX = re.compile(r"-[^-]")
LONG_RGX = re.compile(r"--[^-].*")

OPTION_COLUMN_WIDTH = 30
OPTION_HELP_COLUMN_WIDTH = 40
HELP_GUTTER = 2
HELP_INDENT = 2
HELP_WIDTH = 75


@total_ordering
class Option:
    def __init__(
        self,
        *names: str,
        is_flag: bool = False,
        converter: Optional[Callable[[str], Any]] = None,
        multiple: bool = False,
        immediate: Optional[Immediate] = None,
        metavar: Optional[str] = None,
        help: Optional[str] = None,  # noqa: A002
    ) -> None:
        #: List of individual option characters
        self.shortopts: list[str] = []
        #: List of long option names (sans leading "--")
        self.longopts: list[str] = []
        dest: Optional[str] = None
        self.is_flag: bool = is_flag
        self.converter: Optional[Callable[[str], Any]] = converter
        self.multiple: bool = multiple
        self.immediate: Optional[Immediate] = immediate
        self.metavar: Optional[str] = metavar
        self.help: Optional[str] = help
        for n in names:
            if n.startswith("-"):
                if LONG_RGX.fullmatch(n):
                    self.longopts.append(n[2:])
                elif SHORT_RGX.fullmatch(n):
                    self.shortopts.append(n[1])
                else:
                    raise ValueError(f"Invalid option: {n!r}")
            elif dest is not None:
                raise ValueError("More than one option destination specified")
            else:
                dest = n
        if not self.shortopts and not self.longopts:
            raise ValueError("No options supplied to Option constructor")
        self.dest: str
        if dest is None:
            self.dest = (self.longopts + self.shortopts)[0].replace("-", "_")
        else:
            self.dest = dest

    def __eq__(self, other: Any) -> bool:
        if type(self) is type(other):
            return bool(vars(self) == vars(other))
        else:
            return NotImplemented

    def __lt__(self, other: Any) -> bool:
        if type(self) is type(other):
            return bool(self._cmp_key() < other._cmp_key())
        else:
            return NotImplemented

    def _cmp_key(self) -> tuple[int, str]:
        name = self.option_name
        if name == "--help":
            return (2, name)
        elif name == "--version" and self.immediate is not None:
            return (1, "--version")
        else:
            return (0, name)

    @property
    def option_name(self) -> str:
        """Display name for the option"""
        if self.longopts:
            return f"--{self.longopts[0]}"
        else:
            assert self.shortopts
            return f"-{self.shortopts[0]}"

    def process(self, namespace: dict[str, Any], argument: str) -> Optional[Immediate]:
        if self.immediate is not None:
            return self.immediate
        if self.is_flag:
            namespace[self.dest] = True
        else:
            if self.converter is None:
                value = argument
            else:
                value = self.converter(argument)
            if self.multiple:
                namespace.setdefault(self.dest, []).append(value)
            else:
                namespace[self.dest] = value
        return None

    @property
    def signature(self) -> str:
        """The option's names and metavar as shown in ``--help`` output"""
        sig = ", ".join(
            [f"-{o}" for o in self.shortopts] + [f"--{o}" for o in self.longopts]
        )
        if self.is_flag:
            return sig
        if self.metavar is not None:
            return f"{sig} {self.metavar}"
        if self.longopts:
            return f"{sig} {self.longopts[0].upper().replace('-', '_')}"
        return f"{sig} ARG"

    def get_help(self) -> str:
        sig = self.signature
        text = textwrap.wrap(self.help or "", OPTION_HELP_COLUMN_WIDTH)
        if text and len(sig) <= OPTION_COLUMN_WIDTH:
            first = sig.ljust(OPTION_COLUMN_WIDTH) + " " * HELP_GUTTER + text.pop(0)
        else:
            first = sig
        pad = " " * (OPTION_COLUMN_WIDTH + HELP_GUTTER)
        lines = [first] + [pad + t for t in text]
        return textwrap.indent("\n".join(lines), " " * HELP_INDENT)


@dataclass
class OptionParser:
    command: Optional[str] = None
    #: Names of the command's positional arguments, for usage messages and
    #: arity checks
    arguments: list[str] = field(default_factory=list)
    help: Optional[str] = None
    options: InitVar[Optional[list[Option]]] = None
    #: Mapping from option names (including leading hyphens) to Option
    #: instances
    options_map: dict[str, Option] = field(init=False, default_factory=dict)

    def __post_init__(self, options: Optional[list[Option]]) -> None:
        self.add_option(
            Option(
                "-h",
                "--help",
                is_flag=True,
                immediate=HelpRequest(self.command),
                help="Show this help information and exit",
            )
        )
        if options is not None:
            for opt in options:
                self.add_option(opt)

    def add_option(self, option: Option) -> None:
        if self.options_map.get(option.option_name) == option:
            return
        for o in option.shortopts:
            if f"-{o}" in self.options_map:
                raise ValueError(f"Option -{o} registered more than once")
        for o in option.longopts:
            if f"--{o}" in self.options_map:
                raise ValueError(f"Option --{o} registered more than once")
        for o in option.shortopts:
            self.options_map[f"-{o}"] = option
        for o in option.longopts:
            self.options_map[f"--{o}"] = option

    def parse_args(
        self, args: list[str]
    ) -> Immediate | tuple[dict[str, Any], list[str]]:
        """
        Parse command-line arguments.  At the global level, parsing stops when
        a non-option is reached; for a command, options and positional
        arguments may be interleaved.  Returns either an `Immediate` (if an
        immediate option is encountered) or a tuple of the option values and
        remaining arguments.

        :param list[str] args: command-line arguments without ``sys.argv[0]``
        """
        shortspec = ""
        longspec = []
        for option in self.options_map.values():
            for o in option.shortopts:
                if option.is_flag:
                    shortspec += o
                else:
                    shortspec += f"{o}:"
            for o in option.longopts:
                if option.is_flag:
                    longspec.append(o)
                else:
                    longspec.append(f"{o}=")
        parse = getopt if self.command is None else gnu_getopt
        try:
            optlist, leftovers = parse(args, shortspec, longspec)
        except GetoptError as e:
            raise UsageError(str(e), self.command)
        kwargs: dict[str, Any] = {}
        for o, a in optlist:
            option = self.options_map[o]
            try:
                ret = option.process(kwargs, a)
            except ValueError as e:
                raise UsageError(f"{a!r}: {e}", self.command)
            except UsageError as e:
                e.command = self.command
                raise e
            else:
                if ret is not None:
                    return ret
        return (kwargs, leftovers)

    def short_help(self, progname: str) -> str:
        if self.command is None:
            return f"Usage: {progname} [<options>] COMMAND [<args>]"
        else:
            cmd = f"Usage: {progname} [<options>] {self.command} [<options>]"
            for a in self.arguments:
                cmd += f" {a}"
            return cmd

    def long_help(self, progname: str) -> str:
        lines = [self.short_help(progname)]
        if self.help is not None:
            lines.append("")
            for ln in self.help.splitlines():
                if ln == "":
                    lines.append("")
                else:
                    lines.extend(
                        " " * HELP_INDENT + wl for wl in textwrap.wrap(ln, HELP_WIDTH)
                    )
        if self.options_map:
            lines.append("")
            lines.append("Options:")
            for _, options in groupby(
                sorted(self.options_map.values()), attrgetter("option_name")
            ):
                lines.extend(next(options).get_help().splitlines())
        return "\n".join(lines)


@dataclass
class UsageError(Exception):
    """Raised when an error occurs while processing command-line options"""

    #: The error message
    message: str
    #: The command for which the error occurred, or `None` if the error was
    #: at the global level
    command: Optional[str] = None

    def __str__(self) -> str:
        return self.message


class ParsedArgs(NamedTuple):
    """
    A pair of global options and the `CommandRequest` parsed from
    command-line arguments
    """

    global_opts: dict[str, Any]
    command: CommandRequest


@dataclass
class CommandRequest:
    """A request for a command parsed from command-line arguments"""

    name: str
    args: list[str] = field(default_factory=list)
    kwargs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PackageDefinition:
    """Where a package's releases live, as declared by a registry"""

    #: The package's name, unique within a registry
    name: str

    #: The GitHub repository publishing the package, as ``owner/project``
    repository: str

    #: The name that the package's main executable should be given, if any
    executable_name: Optional[str] = None

    @classmethod
    def from_json(cls, name: str, data: Any) -> PackageDefinition:
        if not isinstance(data, dict):
            raise InvalidRemoteMetadata(f"Package {name!r}: entry is not an object")
        repository = data.get("repository")
        if not isinstance(repository, str) or not repository:
            raise InvalidRemoteMetadata(f"Package {name!r}: missing 'repository'")
        executable_name = data.get("executable_name")
        if executable_name is not None and not isinstance(executable_name, str):
            raise InvalidRemoteMetadata(
                f"Package {name!r}: 'executable_name' is not a string"
            )
        return cls(
            name=name, repository=repository, executable_name=executable_name or None
        )


@dataclass
class Registry:
    """A configured source of package definitions"""

    name: str
    #: Location of the registry's JSON index (``http(s)://``, ``file://``, or
    #: a local path)
    url: str
    #: Registries with lower priorities are searched first
    priority: int = 0

    @classmethod
    def from_json(cls, data: Any) -> Registry:
        if not isinstance(data, dict):
            raise ConfigError("Registry entry is not an object")
        name = data.get("name")
        url = data.get("url")
        priority = data.get("priority", 0)
        if not isinstance(name, str) or not name:
            raise ConfigError("Registry entry is missing 'name'")
        try:
            check_registry_name(name)
        except InvalidRegistryName as e:
            raise ConfigError(str(e))
        if not isinstance(url, str) or not url:
            raise ConfigError(f"Registry {name!r} is missing 'url'")
        if not isinstance(priority, int) or isinstance(priority, bool):
            raise ConfigError(f"Registry {name!r} has a non-integer 'priority'")
        return cls(name=name, url=url, priority=priority)

    def to_json(self) -> dict[str, Any]:
        return {"name": self.name, "url": self.url, "priority": self.priority}


def check_registry_name(name: str) -> None:
    if (
        not name
        or name in (".", "..")
        or any(c in name for c in ("/", "\\", os.sep))
    ):
        raise InvalidRegistryName(f"Invalid registry name: {name!r}")


def default_registry() -> Registry:
    return Registry(name=DEFAULT_REGISTRY_NAME, url=DEFAULT_REGISTRY_URL, priority=0)


def sort_registries(registries: list[Registry]) -> list[Registry]:
    """
    Return the registries in lookup order: ascending priority, with
    registries of equal priority kept in configuration order
    """
    return sorted(registries, key=attrgetter("priority"))


@dataclass
class AssetRecord:
    """A downloadable file attached to a release"""

    name: str
    download_url: str

    @classmethod
    def from_json(cls, data: Any) -> AssetRecord:
        if not isinstance(data, dict):
            raise InvalidRemoteMetadata("Release asset is not an object")
        name = data.get("name")
        url = data.get("browser_download_url")
        if not isinstance(name, str) or not name:
            raise InvalidRemoteMetadata("Release asset is missing 'name'")
        if not isinstance(url, str) or not url:
            raise InvalidRemoteMetadata(
                f"Release asset {name!r} is missing 'browser_download_url'"
            )
        return cls(name=name, download_url=url)


@dataclass
class ReleaseRecord:
    """A tagged release of a repository, as returned by the GitHub API"""

    tag: str
    assets: list[AssetRecord] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> ReleaseRecord:
        if not isinstance(data, dict):
            raise InvalidRemoteMetadata("Release is not an object")
        tag = data.get("tag_name")
        if not isinstance(tag, str) or not tag:
            raise InvalidRemoteMetadata("Release is missing 'tag_name'")
        assets = data.get("assets")
        if not isinstance(assets, list):
            raise InvalidRemoteMetadata(f"Release {tag!r} is missing 'assets'")
        return cls(tag=tag, assets=[AssetRecord.from_json(a) for a in assets])


@dataclass
class InstalledPackage:
    """A ledger entry for an installed package"""

    #: The tag of the installed release
    version: str

    #: The directory holding the package's files
    install_path: Path

    #: The path to the package's main executable, if known
    executable_path: Optional[Path] = None

    @classmethod
    def from_json(cls, data: Any) -> InstalledPackage:
        if not isinstance(data, dict):
            raise ValueError("ledger entry is not an object")
        exe = data.get("executable_path")
        return cls(
            version=str(data["version"]),
            install_path=Path(data["install_path"]),
            executable_path=Path(exe) if exe is not None else None,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "install_path": str(self.install_path),
            "executable_path": (
                str(self.executable_path) if self.executable_path is not None else None
            ),
        }


@dataclass
class PackageState:
    """
    The ledger of installed packages, keyed by package name.  At most one
    entry exists per name; installing a package again replaces its entry.
    """

    STATE_FILE: ClassVar[str] = "package_state.json"

    packages: dict[str, InstalledPackage] = field(default_factory=dict)

    @classmethod
    def load(cls, data_dir: Path) -> PackageState:
        """
        Read the ledger stored in ``data_dir``.  If there is no ledger yet, an
        empty one is returned.
        """
        state_file = data_dir / cls.STATE_FILE
        try:
            with state_file.open(encoding="utf-8") as fp:
                data = json.load(fp)
        except FileNotFoundError:
            log.debug("No package ledger at %s; starting empty", state_file)
            return cls()
        except OSError as e:
            raise FilesystemError(f"Could not read {state_file}: {e}")
        except ValueError as e:
            raise FilesystemError(f"Could not parse {state_file}: {e}")
        try:
            packages = {
                name: InstalledPackage.from_json(entry)
                for name, entry in data["packages"].items()
            }
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise FilesystemError(f"Malformed package ledger {state_file}: {e}")
        return cls(packages=packages)

    def save(self, data_dir: Path) -> None:
        """Write the full ledger to ``data_dir``, replacing the previous one"""
        state_file = data_dir / self.STATE_FILE
        doc = {
            "packages": {
                name: pkg.to_json() for name, pkg in sorted(self.packages.items())
            }
        }
        log.debug("Saving package ledger to %s", state_file)
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmpname = tempfile.mkstemp(
                prefix=".package_state-", suffix=".json", dir=data_dir
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                json.dump(doc, fp, indent=2)
                print(file=fp)
            os.replace(tmpname, state_file)
        except OSError as e:
            raise FilesystemError(f"Could not write {state_file}: {e}")

    def add_package(
        self,
        name: str,
        version: str,
        install_path: Path,
        executable_path: Optional[Path] = None,
    ) -> InstalledPackage:
        pkg = InstalledPackage(
            version=version,
            install_path=install_path,
            executable_path=executable_path,
        )
        self.packages[name] = pkg
        return pkg

    def remove_package(self, name: str) -> Optional[InstalledPackage]:
        return self.packages.pop(name, None)

    def get_package(self, name: str) -> Optional[InstalledPackage]:
        return self.packages.get(name)

    def list_packages(self) -> list[tuple[str, InstalledPackage]]:
        return sorted(self.packages.items())


@dataclass
class Config:
    """The user's configuration: the list of registries to search"""

    registries: list[Registry] = field(default_factory=lambda: [default_registry()])

    @classmethod
    def load(cls, path: Path) -> Config:
        try:
            with path.open(encoding="utf-8") as fp:
                data = json.load(fp)
        except FileNotFoundError:
            log.debug("No configuration file at %s; using defaults", path)
            return cls()
        except OSError as e:
            raise ConfigError(f"Could not read {path}: {e}")
        except ValueError as e:
            raise ConfigError(f"Could not parse {path}: {e}")
        if not isinstance(data, dict) or not isinstance(
            data.get("registries", []), list
        ):
            raise ConfigError(f"{path}: 'registries' must be a list")
        registries = [Registry.from_json(r) for r in data.get("registries", [])]
        if not any(r.name == DEFAULT_REGISTRY_NAME for r in registries):
            registries.insert(0, default_registry())
        return cls(registries=registries)

    def save(self, path: Path) -> None:
        log.debug("Saving configuration to %s", path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as fp:
                json.dump(
                    {"registries": [r.to_json() for r in self.registries]},
                    fp,
                    indent=2,
                )
                print(file=fp)
        except OSError as e:
            raise FilesystemError(f"Could not write {path}: {e}")

    def get_registry(self, name: str) -> Optional[Registry]:
        for r in self.registries:
            if r.name == name:
                return r
        return None

    def add_registry(self, name: str, url: str, priority: int = 0) -> Registry:
        check_registry_name(name)
        if not url:
            raise ConfigError(f"Registry {name!r} needs a URL")
        if self.get_registry(name) is not None:
            raise RegistryAlreadyExists(f"Registry {name!r} already exists")
        registry = Registry(name=name, url=url, priority=priority)
        self.registries.append(registry)
        return registry

    def remove_registry(self, name: str) -> Registry:
        if name == DEFAULT_REGISTRY_NAME:
            raise CannotRemoveDefaultRegistry("Cannot remove the default registry")
        registry = self.get_registry(name)
        if registry is None:
            raise RegistryNotFound(f"Registry {name!r} not found")
        self.registries.remove(registry)
        return registry


def get_data_dir() -> Path:
    """Return the directory in which grip keeps its ledger and packages"""
    if os.environ.get("GRIP_DATA_DIR"):
        return Path(os.environ["GRIP_DATA_DIR"])
    if ON_WINDOWS:
        base = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(base, "grip")
    elif ON_MACOS:
        return Path.home() / "Library" / "Application Support" / "grip"
    else:
        base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
        return Path(base, "grip")


def get_config_dir() -> Path:
    """Return the directory containing grip's ``config.json``"""
    if os.environ.get("GRIP_CONFIG_DIR"):
        return Path(os.environ["GRIP_CONFIG_DIR"])
    if ON_WINDOWS:
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base, "grip")
    elif ON_MACOS:
        return Path.home() / "Library" / "Application Support" / "grip"
    else:
        base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
        return Path(base, "grip")


class GitHubClient:
    def __init__(self, api_url: Optional[str] = None) -> None:
        if api_url is None:
            api_url = os.environ.get("GRIP_GITHUB_API") or GITHUB_API_URL
        self.api_url = api_url.rstrip("/")
        token = os.environ.get("GITHUB_TOKEN")
        if not token and shutil.which("git") is not None:
            r = subprocess.run(
                ["git", "config", "hub.oauthtoken"],
                stdout=subprocess.PIPE,
                universal_newlines=True,
            )
            if r.returncode == 0:
                token = r.stdout.strip()
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    @property
    def download_headers(self) -> dict[str, str]:
        return {**self.headers, "Accept": "application/octet-stream"}

    @contextmanager
    def get(self, url: str) -> Iterator[Any]:
        log.debug("HTTP request: GET %s", url)
        req = Request(url, headers=self.headers)
        try:
            r = urlopen(req)
        except HTTPError as e:
            self.raise_for_ratelimit(e)
            raise NetworkError(f"GET {url} failed: {e}")
        except (URLError, HTTPException, OSError) as e:
            raise NetworkError(f"GET {url} failed: {getattr(e, 'reason', e)}")
        with r:
            yield r

    def getjson(self, url: str) -> Any:
        with self.get(url) as r:
            return load_json_response(r, url)

    def paginate(self, url: str) -> Iterator[dict]:
        while True:
            with self.get(url) as r:
                data = load_json_response(r, url)
                if not isinstance(data, list):
                    raise InvalidRemoteMetadata(f"{url}: expected a JSON array")
                for obj in data:
                    if not isinstance(obj, dict):
                        raise InvalidRemoteMetadata(
                            f"{url}: expected an array of objects"
                        )
                    yield obj
                next_url = parse_header_links(r.headers.get("Link", "")).get("next")
                if next_url is None:
                    break
                url = next_url

    def get_releases(self, repo: str) -> list[ReleaseRecord]:
        """
        Return all releases of ``repo`` in the order the API lists them
        (newest first)
        """
        url = f"{self.api_url}/repos/{repo}/releases?per_page=100"
        log.info("Fetching releases of %s", repo)
        return [ReleaseRecord.from_json(r) for r in self.paginate(url)]

    def raise_for_ratelimit(self, e: HTTPError) -> None:
        if e.code == 403:
            try:
                resp = json.load(e)
            except ValueError:
                return
            if "API rate limit exceeded" in resp.get("message", ""):
                if "Authorization" in self.headers:
                    raise NetworkError("GitHub rate limit exceeded")
                else:
                    raise NetworkError(
                        "GitHub rate limit exceeded and GITHUB_TOKEN not set;"
                        " suggest setting GITHUB_TOKEN in order to get increased"
                        " rate limit"
                    )


class AuthClearHandler(HTTPRedirectHandler):
    def redirect_request(
        self,
        req: Request,
        fp: IO[bytes],
        code: int,
        msg: str,
        headers: HTTPMessage,
        newurl: str,
    ) -> Request | None:
        """
        Per `the W3 standard`__, remove the :mailheader:`Authorization` header
        from requests when following a redirect to another origin.  Release
        asset downloads redirect from github.com to a storage host that
        rejects GitHub authorization.

        __ https://fetch.spec.whatwg.org/#http-redirect-fetch
        """
        if get_url_origin(req.full_url) != get_url_origin(newurl):
            for k in req.headers.keys():
                if k.title() == "Authorization":
                    del req.headers[k]
                    break
        return super().redirect_request(req, fp, code, msg, headers, newurl)


# Use AuthClearHandler for all requests done via urllib:
install_opener(build_opener(AuthClearHandler))


def get_url_origin(url: str) -> tuple[str, str | None, int]:
    # <https://url.spec.whatwg.org/#concept-url-origin>
    port_map = {"http": 80, "https": 443}
    bits = urlparse(url)
    scheme = bits.scheme.lower()
    if scheme not in port_map:
        raise ValueError(f"URL has unsupported scheme: {url!r}")
    host = bits.hostname
    if bits.port is None:
        port = port_map[scheme]
    else:
        port = bits.port
    return (scheme, host, port)


def is_local_path(url: str) -> bool:
    """True iff ``url`` is a filesystem path rather than a URL"""
    scheme = urlparse(url).scheme
    return scheme == "" or (ON_WINDOWS and len(scheme) == 1)


def load_json_response(fp: IO[bytes], url: str) -> Any:
    try:
        return json.load(fp)
    except ValueError as e:
        raise InvalidRemoteMetadata(f"{url}: invalid JSON: {e}")
    except (HTTPException, OSError) as e:
        raise NetworkError(f"Reading {url} failed: {e}")


def fetch_json(url: str) -> Any:
    """Fetch and decode the JSON document at ``url`` (a URL or local path)"""
    if is_local_path(url):
        log.debug("Reading %s", url)
        try:
            with open(url, "rb") as fp:
                return load_json_response(fp, url)
        except OSError as e:
            raise NetworkError(f"Could not read {url}: {e}")
    log.debug("HTTP request: GET %s", url)
    req = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        r = urlopen(req)
    except (URLError, HTTPException, OSError) as e:
        raise NetworkError(f"GET {url} failed: {getattr(e, 'reason', e)}")
    with r:
        return load_json_response(r, url)


def download_file(
    url: str, path: str | Path, headers: Optional[dict[str, str]] = None
) -> None:
    """
    Download a file from ``url``, saving it at ``path``.  Optional ``headers``
    are sent in the HTTP request.  Failures are not retried.
    """
    log.info("Downloading %s", url)
    if headers is None:
        headers = {}
    headers.setdefault("User-Agent", USER_AGENT)
    req = Request(url, headers=headers)
    try:
        r = urlopen(req)
    except (URLError, HTTPException, OSError) as e:
        raise NetworkError(f"Download of {url} failed: {getattr(e, 'reason', e)}")
    with r:
        try:
            fp = open(path, "wb")
        except OSError as e:
            raise FilesystemError(f"Could not write {path}: {e}")
        with fp:
            while True:
                try:
                    chunk = r.read(CHUNK_SIZE)
                except (HTTPException, OSError) as e:
                    raise NetworkError(f"Download of {url} failed: {e}")
                if not chunk:
                    break
                try:
                    fp.write(chunk)
                except OSError as e:
                    raise FilesystemError(f"Could not write {path}: {e}")
        if "content-length" in r.headers:
            size = int(r.headers["Content-Length"])
            fsize = os.path.getsize(path)
            if fsize < size:
                raise NetworkError(
                    f"Download of {url} failed: only {fsize} out of {size}"
                    " bytes were received"
                )


def parse_index(data: Any, source: str) -> dict[str, PackageDefinition]:
    """
    Parse a registry index, either ``{"packages": {NAME: {...}}}`` or a list
    of objects with ``name`` keys
    """
    if isinstance(data, dict) and isinstance(data.get("packages"), dict):
        entries = list(data["packages"].items())
    elif isinstance(data, list):
        entries = []
        for obj in data:
            if not isinstance(obj, dict) or not isinstance(obj.get("name"), str):
                raise InvalidRemoteMetadata(f"{source}: index entry lacks 'name'")
            entries.append((obj["name"], obj))
    else:
        raise InvalidRemoteMetadata(f"{source}: index has no 'packages' mapping")
    return {name: PackageDefinition.from_json(name, obj) for name, obj in entries}


def registry_cache_dir(data_dir: Path, name: str) -> Path:
    """
    Return the directory under ``data_dir`` holding registry ``name``'s cached
    index
    """
    check_registry_name(name)
    root = data_dir / "registries"
    cache = root / name
    if cache.resolve().parent != root.resolve():
        raise InvalidRegistryName(f"Invalid registry name: {name!r}")
    return cache


@dataclass
class RegistryManager:
    """Looks packages up in registries and fetches their releases"""

    data_dir: Path
    github: GitHubClient

    def registry_dir(self, name: str) -> Path:
        return registry_cache_dir(self.data_dir, name)

    def fetch_index(self, registry: Registry) -> dict[str, PackageDefinition]:
        """
        Fetch the index of ``registry``, cache it in the registry's storage
        directory, and return its package definitions
        """
        log.debug("Fetching index of registry %s from %s", registry.name, registry.url)
        data = fetch_json(registry.url)
        index = parse_index(data, registry.url)
        cache = self.registry_dir(registry.name) / "index.json"
        try:
            cache.parent.mkdir(parents=True, exist_ok=True)
            with cache.open("w", encoding="utf-8") as fp:
                json.dump(data, fp, indent=2)
        except OSError as e:
            raise FilesystemError(f"Could not write {cache}: {e}")
        return index

    def find_package(self, registries: list[Registry], name: str) -> PackageDefinition:
        """
        Search ``registries`` in lookup order and return the first definition
        of package ``name``.  A registry that cannot be fetched is skipped; if
        every registry failed with a network error, a `NetworkError` is raised
        instead of `PackageNotFound`.
        """
        failures: list[GripError] = []
        searched = 0
        for registry in sort_registries(registries):
            try:
                index = self.fetch_index(registry)
            except (NetworkError, InvalidRemoteMetadata) as e:
                log.warning("Skipping registry %s: %s", registry.name, e)
                failures.append(e)
                continue
            searched += 1
            if name in index:
                log.debug("Found %s in registry %s", name, registry.name)
                return index[name]
        if (
            failures
            and not searched
            and all(isinstance(e, NetworkError) for e in failures)
        ):
            raise NetworkError(
                f"Could not reach any registry to look up {name!r}: {failures[-1]}"
            )
        raise PackageNotFound(f"Package {name!r} not found in any registry")

    def get_releases(self, repository: str) -> list[ReleaseRecord]:
        releases = self.github.get_releases(repository)
        if not releases:
            raise NoReleases(f"No releases found for {repository}")
        return releases

    def download_asset(self, url: str, filename: str, target_dir: Path) -> Path:
        """
        Download ``url`` to ``target_dir / filename``, creating ``target_dir``
        if necessary and overwriting any existing file
        """
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Could not create {target_dir}: {e}")
        path = target_dir / filename
        download_file(url, path, headers=self.github.download_headers)
        return path


class Chooser(ABC):
    """Picks one option out of a list on behalf of the user"""

    @abstractmethod
    def choose(self, prompt: str, options: list[str], default: int = 0) -> int:
        """Return the index of the chosen option"""
        ...


class InteractiveChooser(Chooser):
    def choose(self, prompt: str, options: list[str], default: int = 0) -> int:
        for i, opt in enumerate(options):
            marker = "*" if i == default else " "
            print(f"{marker} {i + 1:>3}) {opt}")
        while True:
            try:
                answer = input(f"{prompt} [{default + 1}]: ").strip()
            except EOFError:
                raise SelectionError(f"{prompt}: no selection made")
            if not answer:
                return default
            try:
                n = int(answer)
            except ValueError:
                continue
            if 1 <= n <= len(options):
                return n - 1


class DefaultChooser(Chooser):
    """Always accepts the default option"""

    def choose(self, prompt: str, options: list[str], default: int = 0) -> int:
        log.info("%s: %s", prompt, options[default])
        return default


class StrictChooser(Chooser):
    """Picks the only option, refusing to guess among several"""

    def choose(self, prompt: str, options: list[str], default: int = 0) -> int:
        if len(options) == 1:
            return 0
        raise SelectionError(
            f"{prompt}: {len(options)} options available and none given;"
            " specify one explicitly or pass --yes to accept the default"
        )


def select_item(
    names: list[str],
    wanted: Optional[str],
    chooser: Chooser,
    prompt: str,
    not_found: Callable[[str], GripError],
) -> int:
    """
    Return the index of ``wanted`` in ``names`` (exact match only), or, if
    ``wanted`` is `None`, the index chosen by ``chooser`` with the first name
    as the default
    """
    if wanted is not None:
        try:
            return names.index(wanted)
        except ValueError:
            raise not_found(wanted)
    return chooser.choose(prompt, names, default=0)


def select_release(
    releases: list[ReleaseRecord], version: Optional[str], chooser: Chooser
) -> ReleaseRecord:
    i = select_item(
        [r.tag for r in releases],
        version,
        chooser,
        "Select version",
        lambda v: VersionNotFound(f"Version {v!r} not found"),
    )
    return releases[i]


def select_asset(
    release: ReleaseRecord, asset: Optional[str], chooser: Chooser
) -> AssetRecord:
    if not release.assets:
        raise AssetNotFound(f"Release {release.tag!r} has no assets")
    i = select_item(
        [a.name for a in release.assets],
        asset,
        chooser,
        "Select asset",
        lambda a: AssetNotFound(f"Asset {a!r} not found in release {release.tag!r}"),
    )
    return release.assets[i]


def is_archive(filename: str) -> bool:
    return filename.lower().endswith(ARCHIVE_SUFFIXES)


def executable_suffix(filename: str) -> str:
    """
    Return the extension of a raw asset's name that should be kept when it is
    renamed, or the empty string if it has none
    """
    suffix = Path(filename).suffix
    if len(suffix) > 1 and suffix[1:].isalnum():
        return suffix
    return ""


def make_executable(path: Path) -> None:
    if ON_POSIX:
        mode = path.stat().st_mode
        path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def extract_zip(archive: Path, target_dir: Path) -> None:
    root = target_dir.resolve()
    with ZipFile(archive) as zf:
        for info in zf.infolist():
            dest = (root / info.filename).resolve()
            if dest != root and root not in dest.parents:
                raise ArchiveError(
                    f"{archive.name}: refusing to extract {info.filename!r}"
                    " outside of the target directory"
                )
        zf.extractall(root)
        if ON_POSIX:
            # ZipFile does not restore Unix permission bits; group and other
            # write bits are dropped as the tar "data" filter does
            for info in zf.infolist():
                mode = (info.external_attr >> 16) & 0o755
                if mode and not info.is_dir():
                    (root / info.filename).chmod(mode)


def extract_tar(archive: Path, target_dir: Path) -> None:
    if not hasattr(tarfile, "data_filter"):
        raise ArchiveError(
            f"Cannot safely extract {archive.name}: this Python's tarfile lacks"
            " extraction filters (3.9.17+, 3.10.12+, 3.11.4+, or 3.12+ required)"
        )
    with tarfile.open(archive, "r:gz") as tf:
        tf.extractall(target_dir, filter="data")


def extract_archive(archive: Path, target_dir: Path) -> None:
    """Extract a ``.zip``, ``.tar.gz``, or ``.tgz`` file into ``target_dir``"""
    log.info("Extracting %s", archive.name)
    if not archive.exists():
        raise FilesystemError(f"Downloaded file {archive} does not exist")
    try:
        if archive.name.lower().endswith(".zip"):
            extract_zip(archive, target_dir)
        else:
            extract_tar(archive, target_dir)
    except (BadZipFile, tarfile.TarError, EOFError, NotImplementedError) as e:
        raise ArchiveError(f"Could not extract {archive.name}: {e}")
    except OSError as e:
        raise FilesystemError(f"Could not extract {archive.name}: {e}")


def locate_executable(root: Path, executable_name: str) -> Optional[Path]:
    """
    Find the regular file named ``executable_name`` (or, on Windows, with an
    added ``.exe``) nearest to the top of ``root``
    """
    names = {executable_name}
    if ON_WINDOWS:
        names.add(executable_name + ".exe")
    candidates = [
        p for p in root.rglob("*") if p.name in names and p.is_file()
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda p: (len(p.relative_to(root).parts), str(p)))


def unpack_asset(
    downloaded: Path, target_dir: Path, executable_name: Optional[str]
) -> Optional[Path]:
    """
    Turn a downloaded asset into the contents of ``target_dir``: archives are
    extracted and deleted, and other files are renamed to
    ``executable_name``.  Returns the path of the package's executable, or
    `None` if it has no known executable.
    """
    if is_archive(downloaded.name):
        extract_archive(downloaded, target_dir)
        try:
            downloaded.unlink()
        except OSError as e:
            raise FilesystemError(f"Could not remove {downloaded}: {e}")
        log.info("Extracted to %s", target_dir)
        if executable_name is None:
            return None
        found = locate_executable(target_dir, executable_name)
        if found is None:
            log.warning(
                "Executable %r not found in %s", executable_name, downloaded.name
            )
            return None
        dest = target_dir / found.name
        if dest.is_dir():
            log.warning("%s is a directory; leaving executable at %s", dest, found)
            dest = found
        try:
            if found != dest:
                log.info("Copying %s to %s", found, dest)
                shutil.copy2(found, dest)
            make_executable(dest)
        except OSError as e:
            raise FilesystemError(f"Could not copy {found} to {dest}: {e}")
        return dest
    else:
        if executable_name is None:
            return None
        dest = target_dir / (executable_name + executable_suffix(downloaded.name))
        try:
            if dest != downloaded:
                log.info("Renaming %s to %s", downloaded.name, dest.name)
                downloaded.replace(dest)
            make_executable(dest)
        except FileNotFoundError:
            raise FilesystemError(f"Downloaded file {downloaded} does not exist")
        except OSError as e:
            raise FilesystemError(f"Could not rename {downloaded} to {dest}: {e}")
        return dest


@contextmanager
def promoted(staging: Path, target: Path, scratch: Path) -> Iterator[Path]:
    """
    Move the fully-built ``staging`` tree to ``target``, setting aside any
    previous tree in ``scratch``.  If the body of the ``with`` block fails,
    the new tree is removed and the previous one is put back.
    """
    previous: Optional[Path] = None
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            previous = scratch / "previous"
            target.replace(previous)
        staging.replace(target)
    except OSError as e:
        if previous is not None and not target.exists():
            previous.replace(target)
        raise FilesystemError(f"Could not move package into {target}: {e}")
    log.debug("Promoted %s to %s", staging, target)
    try:
        yield target
    except BaseException:
        log.debug("Rolling back %s", target)
        shutil.rmtree(target, ignore_errors=True)
        if previous is not None:
            previous.replace(target)
        raise


@contextmanager
def lock_data_dir(data_dir: Path) -> Iterator[None]:
    """
    Hold an exclusive advisory lock on ``data_dir`` for the duration of the
    ``with`` block
    """
    lockfile = data_dir / "grip.lock"
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        fp = lockfile.open("a+")
    except OSError as e:
        raise FilesystemError(f"Could not open {lockfile}: {e}")
    with fp:
        try:
            if ON_WINDOWS:
                import msvcrt

                fp.seek(0)
                msvcrt.locking(fp.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl

                fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            raise LockError(
                f"Another grip process is using {data_dir}; try again later"
            )
        log.debug("Acquired lock on %s", lockfile)
        try:
            yield
        finally:
            if ON_WINDOWS:
                import msvcrt

                fp.seek(0)
                msvcrt.locking(fp.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl

                fcntl.flock(fp.fileno(), fcntl.LOCK_UN)


class PathManager(ABC):
    """Persists additions to the user's ``PATH``"""

    @classmethod
    def for_platform(cls, env_write_files: Optional[list[Path]] = None) -> PathManager:
        if ON_WINDOWS:
            return RegistryPathManager()
        else:
            if not env_write_files:
                env_write_files = [default_profile()]
            return ProfilePathManager(env_write_files)

    @abstractmethod
    def persisted_entries(self) -> list[str]:
        ...

    @abstractmethod
    def add_to_path(self, directory: Path) -> bool:
        """
        Ensure that ``directory`` is on the persistent ``PATH``.  Returns true
        iff anything was changed.
        """
        ...

    @abstractmethod
    def remove_from_path(self, directory: Path) -> bool:
        ...


def default_profile() -> Path:
    """Return the shell start-up file to which ``PATH`` lines are written"""
    shell = Path(os.environ.get("SHELL", "")).name
    if shell == "zsh":
        return Path.home() / ".zshrc"
    elif shell == "bash":
        return Path.home() / ".bashrc"
    else:
        return Path.home() / ".profile"


@dataclass
class ProfilePathManager(PathManager):
    """Appends ``export PATH=...`` lines to shell start-up files"""

    env_write_files: list[Path]

    @staticmethod
    def path_line(directory: Path) -> str:
        return f'export PATH="$PATH":{shlex.quote(str(directory))}  {PATH_MARKER}'

    @staticmethod
    def managed_dirs(lines: list[str]) -> list[str]:
        dirs = []
        for ln in lines:
            m = PATH_LINE_RGX.fullmatch(ln.strip())
            if m:
                dirs.extend(shlex.split(m["dir"]))
        return dirs

    @staticmethod
    def read_text(p: Path) -> str:
        try:
            return p.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise FilesystemError(f"Could not read {p}: {e}")

    def read_lines(self, p: Path) -> list[str]:
        return self.read_text(p).splitlines()

    def persisted_entries(self) -> list[str]:
        entries = []
        for p in self.env_write_files:
            entries.extend(self.managed_dirs(self.read_lines(p)))
        return entries

    def add_to_path(self, directory: Path) -> bool:
        d = str(directory)
        changed = False
        for p in self.env_write_files:
            text = self.read_text(p)
            if d in self.managed_dirs(text.splitlines()):
                log.debug("%s already adds %s to PATH", p, d)
                continue
            log.info("Adding %s to PATH in %s", d, p)
            try:
                p.parent.mkdir(parents=True, exist_ok=True)
                with p.open("a", encoding="utf-8") as fp:
                    if text and not text.endswith("\n"):
                        print(file=fp)
                    print(self.path_line(directory), file=fp)
            except OSError as e:
                raise FilesystemError(f"Could not update {p}: {e}")
            changed = True
        return changed

    def remove_from_path(self, directory: Path) -> bool:
        d = str(directory)
        changed = False
        for p in self.env_write_files:
            lines = self.read_lines(p)
            kept = [ln for ln in lines if self.managed_dirs([ln]) != [d]]
            if len(kept) != len(lines):
                log.info("Removing %s from PATH in %s", d, p)
                try:
                    p.write_text(
                        "".join(ln + "\n" for ln in kept), encoding="utf-8"
                    )
                except OSError as e:
                    raise FilesystemError(f"Could not update {p}: {e}")
                changed = True
        return changed


class RegistryPathManager(PathManager):
    """Edits the user's ``Path`` value in the Windows registry"""

    KEY: ClassVar[str] = "Environment"
    VALUE: ClassVar[str] = "Path"

    def persisted_entries(self) -> list[str]:
        import winreg

        try:
            with winreg.OpenKey(winreg.HKEY_CURRENT_USER, self.KEY) as key:
                value, _ = winreg.QueryValueEx(key, self.VALUE)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise FilesystemError(f"Could not read user Path: {e}")
        return [p for p in str(value).split(";") if p]

    def write_entries(self, entries: list[str]) -> None:
        import winreg

        try:
            with winreg.CreateKeyEx(
                winreg.HKEY_CURRENT_USER, self.KEY, 0, winreg.KEY_SET_VALUE
            ) as key:
                winreg.SetValueEx(
                    key, self.VALUE, 0, winreg.REG_EXPAND_SZ, ";".join(entries)
                )
        except OSError as e:
            raise FilesystemError(f"Could not update user Path: {e}")
        # HWND_BROADCAST, WM_SETTINGCHANGE, SMTO_ABORTIFHUNG
        ctypes.windll.user32.SendMessageTimeoutW(  # type: ignore[attr-defined]
            0xFFFF, 0x001A, 0, "Environment", 0x0002, 5000, None
        )

    def add_to_path(self, directory: Path) -> bool:
        d = str(directory)
        entries = self.persisted_entries()
        if d in entries:
            log.debug("%s is already on PATH", d)
            return False
        log.info("Adding %s to the user Path", d)
        self.write_entries(entries + [d])
        return True

    def remove_from_path(self, directory: Path) -> bool:
        d = str(directory)
        entries = self.persisted_entries()
        if d not in entries:
            return False
        log.info("Removing %s from the user Path", d)
        self.write_entries([e for e in entries if e != d])
        return True


@dataclass
class GripInstaller:
    """The program's primary class: owns the configuration and the ledger"""

    COMMANDS: ClassVar[dict[str, type[Command]]] = {}

    #: Command names that take a sub-command (e.g., ``registry add``)
    GROUPS: ClassVar[set[str]] = {"registry"}

    OPTION_PARSER: ClassVar[OptionParser] = OptionParser(
        help=(
            "Install prebuilt programs from GitHub releases\n\n"
            "`grip` looks packages up in prioritized registries, downloads a"
            " release asset of the package's GitHub repository, unpacks it,"
            " and adds it to your PATH."
        ),
        options=[
            Option(
                "-V",
                "--version",
                is_flag=True,
                immediate=VersionRequest(),
                help="Show program version and exit",
            ),
            Option(
                "-l",
                "--log-level",
                converter=parse_log_level,
                metavar="LEVEL",
                help="Set logging level [default: INFO]",
            ),
            Option(
                "-E",
                "--env-write-file",
                converter=Path,
                multiple=True,
                help=(
                    "Append PATH modifications to the given shell start-up"
                    " file; can be given multiple times"
                ),
            ),
            Option(
                "--data-dir",
                converter=Path,
                metavar="DIR",
                help="Directory holding installed packages and the ledger",
            ),
            Option(
                "--config",
                "config_file",
                converter=Path,
                metavar="FILE",
                help="Read registries from the given configuration file",
            ),
            Option(
                "-y",
                "--yes",
                is_flag=True,
                help="Accept the latest version and first asset without asking",
            ),
        ],
    )

    data_dir: Path = field(default_factory=get_data_dir)

    config_file: Path = field(default_factory=lambda: get_config_dir() / "config.json")

    #: Shell start-up files to which ``PATH`` modifications are written
    env_write_files: list[Path] = field(default_factory=list)

    chooser: Optional[Chooser] = None

    github: Optional[GitHubClient] = None

    config: Config = field(init=False)

    package_state: PackageState = field(init=False)

    def __post_init__(self) -> None:
        if self.chooser is None:
            if sys.stdin is not None and sys.stdin.isatty():
                self.chooser = InteractiveChooser()
            else:
                self.chooser = StrictChooser()
        self.config = Config.load(self.config_file)
        self.package_state = PackageState.load(self.data_dir)
        self._registry_manager: Optional[RegistryManager] = None
        self._path_manager: Optional[PathManager] = None

    @property
    def registry_manager(self) -> RegistryManager:
        if self._registry_manager is None:
            if self.github is None:
                self.github = GitHubClient()
            self._registry_manager = RegistryManager(self.data_dir, self.github)
        return self._registry_manager

    @property
    def path_manager(self) -> PathManager:
        if self._path_manager is None:
            self._path_manager = PathManager.for_platform(self.env_write_files)
        return self._path_manager

    @classmethod
    def register_command(cls, command: type[Command]) -> type[Command]:
        """A decorator for registering concrete `Command` subclasses"""
        cls.COMMANDS[command.NAME] = command
        return command

    @contextmanager
    def locked(self) -> Iterator[None]:
        """
        Lock the data directory and reload the ledger and configuration so
        that changes made by other processes are not lost
        """
        with lock_data_dir(self.data_dir):
            self.config = Config.load(self.config_file)
            self.package_state = PackageState.load(self.data_dir)
            yield

    def install(
        self,
        package_name: str,
        version: Optional[str] = None,
        asset: Optional[str] = None,
    ) -> InstalledPackage:
        """
        Install a package.  Nothing is written under the package directory,
        to ``PATH``, or to the ledger unless every step succeeds.
        """
        with self.locked():
            log.info("Looking up package %s", package_name)
            package = self.registry_manager.find_package(
                self.config.registries, package_name
            )
            log.info("Found package in repository %s", package.repository)
            releases = self.registry_manager.get_releases(package.repository)
            assert self.chooser is not None
            release = select_release(releases, version, self.chooser)
            log.info("Selected version %s", release.tag)
            chosen = select_asset(release, asset, self.chooser)
            log.info("Selected asset %s", chosen.name)
            previous = self.package_state.get_package(package_name)
            target_dir = self.data_dir / "packages" / package_name / release.tag
            staging_root = self.data_dir / "staging"
            try:
                staging_root.mkdir(parents=True, exist_ok=True)
                scratch_dir = tempfile.TemporaryDirectory(
                    prefix=f"{package_name}-", dir=staging_root
                )
            except OSError as e:
                raise FilesystemError(f"Could not create staging directory: {e}")
            with scratch_dir as scratch:
                staging = Path(scratch, "tree")
                downloaded = self.registry_manager.download_asset(
                    chosen.download_url, chosen.name, staging
                )
                exe = unpack_asset(downloaded, staging, package.executable_name)
                with promoted(staging, target_dir, Path(scratch)):
                    executable_path: Optional[Path] = None
                    if exe is not None:
                        executable_path = target_dir / exe.relative_to(staging)
                    added = self.path_manager.add_to_path(target_dir)
                    try:
                        installed = self.package_state.add_package(
                            package_name, release.tag, target_dir, executable_path
                        )
                        self.package_state.save(self.data_dir)
                    except BaseException:
                        if added:
                            self.path_manager.remove_from_path(target_dir)
                        raise
            if previous is not None and previous.install_path != target_dir:
                log.info("Removing previous version %s", previous.version)
                self.remove_install_dir(previous.install_path)
            log.info("Installed %s %s", package_name, release.tag)
            if executable_path is not None:
                log.info("%s is now installed at %s", package_name, executable_path)
            return installed

    def remove_install_dir(self, install_path: Path) -> None:
        self.path_manager.remove_from_path(install_path)
        try:
            if install_path.exists():
                shutil.rmtree(install_path)
            pkgdir = install_path.parent
            if pkgdir.exists() and not any(pkgdir.iterdir()):
                pkgdir.rmdir()
        except OSError as e:
            raise FilesystemError(f"Could not remove {install_path}: {e}")

    def uninstall(self, package_name: str) -> InstalledPackage:
        with self.locked():
            pkg = self.package_state.remove_package(package_name)
            if pkg is None:
                raise PackageNotInstalled(f"Package {package_name!r} is not installed")
            self.package_state.save(self.data_dir)
            self.remove_install_dir(pkg.install_path)
            log.info("Uninstalled %s %s", package_name, pkg.version)
            return pkg

    def add_registry(self, name: str, url: str, priority: int = 0) -> Registry:
        with self.locked():
            registry = self.config.add_registry(name, url, priority)
            self.config.save(self.config_file)
        log.info("Added registry %s (%s)", name, url)
        return registry

    def remove_registry(self, name: str) -> Registry:
        with self.locked():
            cache = registry_cache_dir(self.data_dir, name)
            registry = self.config.remove_registry(name)
            self.config.save(self.config_file)
            if cache.exists():
                try:
                    shutil.rmtree(cache)
                except OSError as e:
                    raise FilesystemError(f"Could not remove {cache}: {e}")
        log.info("Removed registry %s", name)
        return registry

    def list_registries(self) -> list[Registry]:
        return sort_registries(self.config.registries)

    def list_packages(self) -> list[tuple[str, InstalledPackage]]:
        return self.package_state.list_packages()

    @staticmethod
    def init_project(path: Path) -> Path:
        manifest = {"name": "grip-project", "version": "0.1.0", "dependencies": {}}
        try:
            with path.open("w", encoding="utf-8") as fp:
                json.dump(manifest, fp, indent=2)
                print(file=fp)
        except OSError as e:
            raise FilesystemError(f"Could not write {path}: {e}")
        log.info("Created %s", path)
        return path

    @classmethod
    def parse_args(cls, args: list[str]) -> Immediate | ParsedArgs:
        """
        Parse all command-line arguments.

        :param list[str] args: command-line arguments without ``sys.argv[0]``
        """
        r = cls.OPTION_PARSER.parse_args(args)
        if isinstance(r, Immediate):
            return r
        global_opts, leftovers = r
        if not leftovers:
            raise UsageError("No command given")
        name = leftovers.pop(0)
        if name in cls.GROUPS:
            if not leftovers or leftovers[0].startswith("-"):
                subs = sorted(
                    c.split()[1] for c in cls.COMMANDS if c.startswith(name + " ")
                )
                raise UsageError(f"{name} requires one of: {', '.join(subs)}")
            name += " " + leftovers.pop(0)
        try:
            command = cls.COMMANDS[name]
        except KeyError:
            raise UsageError(f"Unknown command: {name!r}")
        cr = command.OPTION_PARSER.parse_args(leftovers)
        if isinstance(cr, Immediate):
            return cr
        kwargs, positional = cr
        expected = command.OPTION_PARSER.arguments
        if len(positional) != len(expected):
            if expected:
                msg = f"{name} takes {len(expected)} argument(s): {' '.join(expected)}"
            else:
                msg = f"{name} takes no arguments"
            raise UsageError(msg, name)
        return ParsedArgs(global_opts, CommandRequest(name, positional, kwargs))

    @classmethod
    def main(cls, argv: Optional[list[str]] = None) -> int:
        """
        Parse command-line arguments and perform the requested action.
        Returns 0 if everything was OK, nonzero otherwise.

        :param list[str] argv: command-line arguments, including
            ``sys.argv[0]``
        """
        if argv is None:
            argv = sys.argv
        progname, *args = argv
        if not progname:
            progname = "grip"
        else:
            progname = Path(progname).name
        try:
            r = cls.parse_args(args)
        except UsageError as e:
            print(cls.short_help(progname, e.command), file=sys.stderr)
            print(file=sys.stderr)
            print(str(e), file=sys.stderr)
            return 2
        if isinstance(r, VersionRequest):
            print("grip", __version__)
            return 0
        elif isinstance(r, HelpRequest):
            print(cls.long_help(progname, r.command))
            return 0
        else:
            assert isinstance(r, ParsedArgs)
        global_opts, cr = r
        logging.basicConfig(
            format="%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
            level=global_opts.pop("log_level", logging.INFO),
        )
        kwargs: dict[str, Any] = {}
        if global_opts.get("data_dir") is not None:
            kwargs["data_dir"] = global_opts["data_dir"]
        if global_opts.get("config_file") is not None:
            kwargs["config_file"] = global_opts["config_file"]
        if global_opts.get("env_write_file"):
            kwargs["env_write_files"] = global_opts["env_write_file"]
        if global_opts.get("yes"):
            kwargs["chooser"] = DefaultChooser()
        try:
            manager = cls(**kwargs)
            cls.COMMANDS[cr.name](manager).run(*cr.args, **cr.kwargs)
        except GripError as e:
            log.error("%s", e)
            return 1
        return 0

    @classmethod
    def short_help(cls, progname: str, command: Optional[str] = None) -> str:
        if command is None:
            return cls.OPTION_PARSER.short_help(progname)
        else:
            return cls.COMMANDS[command].OPTION_PARSER.short_help(progname)

    @classmethod
    def long_help(cls, progname: str, command: Optional[str] = None) -> str:
        if command is None:
            s = cls.OPTION_PARSER.long_help(progname)
            s += "\n\nCommands:"
            width = max(map(len, cls.COMMANDS.keys()))
            for name, cmd in sorted(cls.COMMANDS.items()):
                if cmd.OPTION_PARSER.help is not None:
                    chelp = cmd.OPTION_PARSER.help.splitlines()[0]
                else:
                    chelp = ""
                s += (
                    f"\n{' ' * HELP_INDENT}{name:{width}}{' ' * HELP_GUTTER}"
                    + textwrap.shorten(chelp, HELP_WIDTH - width - HELP_GUTTER)
                )
            return s
        else:
            return cls.COMMANDS[command].OPTION_PARSER.long_help(progname)


@dataclass
class Command(ABC):
    """
    An abstract base class for a command that can be given on the command
    line
    """

    NAME: ClassVar[str]

    OPTION_PARSER: ClassVar[OptionParser]

    manager: GripInstaller

    @abstractmethod
    def run(self, *args: str, **kwargs: Any) -> None:
        ...


@GripInstaller.register_command
@dataclass
class InstallCommand(Command):
    NAME: ClassVar[str] = "install"

    OPTION_PARSER: ClassVar[OptionParser] = OptionParser(
        "install",
        arguments=["PACKAGE"],
        help=(
            "Install a package\n\nWithout --version or --asset, you are asked"
            " to pick from the available releases and assets, the latest"
            " release being the default."
        ),
        options=[
            Option(
                "-v",
                "--version",
                metavar="TAG",
                help="Install the release with the given tag",
            ),
            Option(
                "-a",
                "--asset",
                metavar="NAME",
                help="Install the release asset with the given name",
            ),
        ],
    )

    def run(  # type: ignore[override]
        self,
        package: str,
        version: Optional[str] = None,
        asset: Optional[str] = None,
    ) -> None:
        self.manager.install(package, version=version, asset=asset)


@GripInstaller.register_command
@dataclass
class UninstallCommand(Command):
    NAME: ClassVar[str] = "uninstall"

    OPTION_PARSER: ClassVar[OptionParser] = OptionParser(
        "uninstall",
        arguments=["PACKAGE"],
        help="Remove an installed package",
    )

    def run(self, package: str) -> None:  # type: ignore[override]
        self.manager.uninstall(package)


@GripInstaller.register_command
@dataclass
class ListCommand(Command):
    NAME: ClassVar[str] = "list"

    OPTION_PARSER: ClassVar[OptionParser] = OptionParser(
        "list", help="List installed packages"
    )

    def run(self) -> None:  # type: ignore[override]
        for name, pkg in self.manager.list_packages():
            print(f"{name} {pkg.version}")


@GripInstaller.register_command
@dataclass
class RegistryAddCommand(Command):
    NAME: ClassVar[str] = "registry add"

    OPTION_PARSER: ClassVar[OptionParser] = OptionParser(
        "registry add",
        arguments=["NAME", "URL"],
        help="Add a package registry",
        options=[
            Option(
                "-p",
                "--priority",
                converter=int,
                metavar="N",
                help="Registries with lower priorities are searched first [default: 0]",
            ),
        ],
    )

    def run(  # type: ignore[override]
        self, name: str, url: str, priority: int = 0
    ) -> None:
        self.manager.add_registry(name, url, priority)


@GripInstaller.register_command
@dataclass
class RegistryRemoveCommand(Command):
    NAME: ClassVar[str] = "registry remove"

    OPTION_PARSER: ClassVar[OptionParser] = OptionParser(
        "registry remove",
        arguments=["NAME"],
        help="Remove a package registry and its cached index",
    )

    def run(self, name: str) -> None:  # type: ignore[override]
        self.manager.remove_registry(name)


@GripInstaller.register_command
@dataclass
class RegistryListCommand(Command):
    NAME: ClassVar[str] = "registry list"

    OPTION_PARSER: ClassVar[OptionParser] = OptionParser(
        "registry list", help="List configured registries in lookup order"
    )

    def run(self) -> None:  # type: ignore[override]
        for r in self.manager.list_registries():
            print(f"{r.name} (priority: {r.priority}, url: {r.url})")


@GripInstaller.register_command
@dataclass
class InitCommand(Command):
    NAME: ClassVar[str] = "init"

    OPTION_PARSER: ClassVar[OptionParser] = OptionParser(
        "init",
        help="Write a boilerplate grip.json project manifest",
        options=[
            Option(
                "--path",
                converter=Path,
                metavar="FILE",
                help="Write the manifest to the given path [default: grip.json]",
            ),
        ],
    )

    def run(self, path: Optional[Path] = None) -> None:  # type: ignore[override]
        self.manager.init_project(path if path is not None else Path("grip.json"))


def parse_header_links(links_header: str) -> dict[str, str]:
    """
    Map each ``rel`` of an HTTP ``Link`` header to its URL, e.g.
    ``{"next": "https://...?page=2", "last": "https://...?page=6"}``
    """
    links: dict[str, str] = {}
    for m in LINK_RGX.finditer(links_header):
        rel = REL_RGX.search(m["params"])
        if rel is not None:
            for r in rel["rel"].split():
                links.setdefault(r, m["url"].strip())
    return links


def main(argv: Optional[list[str]] = None) -> int:
    return GripInstaller.main(argv)


if __name__ == "__main__":
    sys.exit(main(sys.argv))

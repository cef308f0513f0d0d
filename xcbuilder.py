#!/usr/bin/env python3
"""xcbuilder - build automation for Xcode projects.

This module drives Apple's command-line tools from a YAML description of
the builds and tests of an Xcode project:

1. Archiving and exporting builds with ``xcodebuild``
2. Running tests with ``xcodebuild test`` and converting logs to JUnit
3. Installing certificates into a transient keychain with ``security``
4. Packaging and uploading builds with ``altool`` or ``iTMSTransporter``

Usage (CLI):
    # Archive every build declared in xcbuilder.yml
    xcbuilder

    # Export, package and upload
    xcbuilder -f config/builds.yml deploy

Usage (API):
    from xcbuilder import BuildContext, Project, Tasks

    project = Project.load("xcbuilder.yml")
    Tasks(project, BuildContext()).run(["package"])

Example xcbuilder.yml:
    workspace: MyApp.xcworkspace
    certificate: Distribution.p12
    builds:
      - scheme: MyApp
        provisioning_profile: MyApp App Store
        app_id: "1234567890"
    tests:
      - scheme: MyAppTests
        destinations:
          - platform=iOS Simulator,name=iPhone 15
"""

import argparse
import contextlib
import datetime
import hashlib
import logging
import os
import re
import shlex
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

import requests
import yaml
from dotenv import find_dotenv, load_dotenv

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

DEFAULT_CONFIG_FILES = ("xcbuilder.yml", "xcbuilder.yaml", ".xcbuilder.yml")

DEFAULT_DEVELOPER_DIR = "/Applications/Xcode.app/Contents/Developer"

# Tag prefix used for the monotonic build counter
BUILD_TAG_PREFIX = "build/"

RELEASE_NOTES = "ReleaseNotes.txt"

PROVISIONING_PROFILES_DIR = "~/Library/MobileDevice/Provisioning Profiles"

SYSTEM_KEYCHAIN = "/Library/Keychains/System.keychain"

# Environment variable names
ENV_DEVELOPER_DIR = "DEVELOPER_DIR"
ENV_BUILD_NUMBER = "BUILD_NUMBER"
ENV_CERTIFICATE_PASSWORD = "CERTIFICATE_PASSWORD"
ENV_DRY_RUN = "DRY_RUN"
ENV_GITHUB_TOKEN = "GITHUB_TOKEN"
ENV_GITHUB_REPOSITORY = "GITHUB_REPOSITORY"
ENV_GITHUB_SHA = "GITHUB_SHA"
ENV_APP_STORE_CONNECT_USER = "APP_STORE_CONNECT_USER"
ENV_APP_STORE_CONNECT_PASSWORD = "APP_STORE_CONNECT_PASSWORD"

# Variables (and the value each must have) that mark a CI build
CI_ENVIRONMENT = {
    "CI": "true",
    "TRAVIS": "true",
    "TF_BUILD": "True",
    "XCS": "1",
    "GITHUB_ACTIONS": "true",
}

# Upload platform for each sdk
SDK_PLATFORMS = {
    "iphoneos": "ios",
    "appletvos": "appletvos",
    "macosx": "osx",
}

UPLOAD_TOOLS = ("altool", "transporter")

METADATA_XML_TMPL = """\
<?xml version="1.0" encoding="UTF-8"?>
<package version="software5.3" xmlns="http://apple.com/itunes/importer">
    <software_assets apple_id="{app_id}" app_platform="{platform}">
        <asset type="bundle">
            <data_file>
                <file_name>{file_name}</file_name>
                <checksum type="md5">{checksum}</checksum>
                <size>{size}</size>
            </data_file>
        </asset>
    </software_assets>
</package>
"""

# ----------------------------------------------------------------------------
# Error handling


class BuilderError(Exception):
    """Base exception class for xcbuilder errors."""


class CommandError(BuilderError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class ConfigurationError(BuilderError):
    """Exception raised when configuration is invalid."""


class PackagingError(BuilderError):
    """Exception raised when packaging or uploading fails."""


class GitHubError(BuilderError):
    """Exception raised when a GitHub API request fails."""


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: color.grey,
        logging.INFO: color.green,
        logging.WARNING: color.yellow,
        logging.ERROR: color.red,
        logging.CRITICAL: color.bold_red,
    }

    def __init__(self, use_color: bool = True, verbose: bool = False):
        super().__init__()
        self.use_color = use_color
        self.verbose = verbose

    def _format_string(self, levelno: int) -> str:
        c = self.color
        if not self.use_color:
            fields = ["%(delta)s", "%(levelname)s", "%(message)s"]
            if self.verbose:
                fields.insert(2, "%(name)s.%(funcName)s")
            return " - ".join(fields)
        level = self.LEVEL_COLORS.get(levelno, c.white)
        fields = [
            f"{c.white}%(delta)s{c.reset}",
            f"{level}%(levelname)s{c.reset}",
            f"{c.grey}%(message)s{c.reset}",
        ]
        if self.verbose:
            fields.insert(2, f"{c.white}%(name)s.%(funcName)s{c.reset}")
        return " - ".join(fields)

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record, naming the emitting logger when verbose."""
        log_fmt = self._format_string(record.levelno)
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Enable debug logging and show the emitting logger
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color, verbose=debug))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    env: dict[str, str] | None = None,
    stdin: Pathlike | None = None,
    stdout: Pathlike | None = None,
    capture: bool = True,
) -> str:
    """Run a command and return its output.

    This is the single command execution utility used throughout the
    module. Commands run with shell=False and block until completion.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for command and dry-run output
        env: Optional complete environment for the child process
        stdin: Optional file to feed to the command's standard input
        stdout: Optional file receiving the command's standard output
        capture: If False, let output go to the terminal

    Returns:
        The command stdout output ("" when not captured or dry-run)

    Raises:
        CommandError: If the command exits with a non-zero status
    """
    cmd_str = shlex.join(command)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    if log:
        log.info("Running: %s", cmd_str)

    with contextlib.ExitStack() as stack:
        stdin_file = None
        stdout_file = None
        if stdin is not None:
            stdin_file = stack.enter_context(open(stdin, "rb"))
        if stdout is not None:
            stdout_file = stack.enter_context(open(stdout, "wb"))
        try:
            if stdout_file is None and capture:
                result = subprocess.run(
                    command,
                    shell=False,
                    check=True,
                    text=True,
                    capture_output=True,
                    env=env,
                    stdin=stdin_file,
                )
                return result.stdout
            subprocess.run(
                command,
                shell=False,
                check=True,
                env=env,
                stdin=stdin_file,
                stdout=stdout_file,
            )
            return ""
        except subprocess.CalledProcessError as e:
            raise CommandError(
                cmd_str, e.returncode, e.stderr or e.output
            ) from e
        except FileNotFoundError as e:
            # same status a shell reports for a missing program
            raise CommandError(cmd_str, 127, str(e)) from e


# ----------------------------------------------------------------------------
# Configuration file support


def find_config(config_path: Pathlike | None = None) -> Path:
    """Locate the YAML build description.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. xcbuilder.yml, xcbuilder.yaml, .xcbuilder.yml in current directory

    Raises:
        ConfigurationError: If no configuration file exists
    """
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        return path

    cwd = Path.cwd()
    for name in DEFAULT_CONFIG_FILES:
        path = cwd / name
        if path.exists():
            return path

    raise ConfigurationError(
        "No config file found (tried: {})".format(
            ", ".join(DEFAULT_CONFIG_FILES)
        )
    )


def load_config(config_path: Pathlike) -> dict[str, object]:
    """Load a YAML build description into a dictionary.

    Raises:
        ConfigurationError: If the file is not valid YAML or not a mapping
    """
    path = Path(config_path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must be a mapping: {path}")
    return data


# ----------------------------------------------------------------------------
# Build context


class BuildContext:
    """Per-run state shared by the runner, uploader and tasks.

    Holds the environment snapshot, the dry-run flag, the process id used
    to name the transient keychain and the memoized build number.

    Args:
        environ: Environment mapping (default: a copy of os.environ)
        dry_run: Force dry-run on or off (default: DRY_RUN is set)
        pid: Process id used in the keychain name (default: os.getpid())
    """

    def __init__(
        self,
        environ: dict[str, str] | None = None,
        dry_run: bool | None = None,
        pid: int | None = None,
    ) -> None:
        self.environ = dict(os.environ if environ is None else environ)
        if dry_run is None:
            dry_run = ENV_DRY_RUN in self.environ
        self.dry_run = dry_run
        self.pid = pid if pid is not None else os.getpid()
        self._build_number: str | None = None
        self._github: GitHubClient | None = None
        self.log = logging.getLogger(self.__class__.__name__)

    def run(self, command: list[str], **kwargs: object) -> str:
        """Run a command honouring the context's dry-run flag."""
        return run_command(
            command, dry_run=self.dry_run, log=self.log, **kwargs
        )

    @property
    def is_ci_build(self) -> bool:
        return any(
            self.environ.get(name) == value
            for name, value in CI_ENVIRONMENT.items()
        )

    @property
    def is_dev_build(self) -> bool:
        return not self.is_ci_build

    @property
    def keychain_name(self) -> str:
        return f"Build-{self.pid}.keychain"

    @property
    def developer_dir(self) -> str:
        return self.environ.get(ENV_DEVELOPER_DIR, DEFAULT_DEVELOPER_DIR)

    def xcode_environ(self) -> dict[str, str]:
        """Environment for xcodebuild with DEVELOPER_DIR pinned."""
        env = dict(self.environ)
        env[ENV_DEVELOPER_DIR] = self.developer_dir
        return env

    def xcode_path(self) -> Path:
        """Active Xcode developer directory.

        DEVELOPER_DIR wins; otherwise ask ``xcode-select -p``.
        """
        if ENV_DEVELOPER_DIR in self.environ:
            return Path(self.environ[ENV_DEVELOPER_DIR])
        output = run_command(["xcode-select", "-p"], log=self.log)
        return Path(output.strip())

    @property
    def github(self) -> "GitHubClient | None":
        """GitHub client when token and repository are configured."""
        if self._github is None:
            token = self.environ.get(ENV_GITHUB_TOKEN)
            repository = self.environ.get(ENV_GITHUB_REPOSITORY)
            if token and repository:
                self._github = GitHubClient(token, repository)
        return self._github

    @property
    def build_number(self) -> str:
        """Build number for this run, computed once.

        BUILD_NUMBER overrides; otherwise the number following the highest
        ``build/<n>`` tag.
        """
        if self._build_number is None:
            if ENV_BUILD_NUMBER in self.environ:
                self._build_number = self.environ[ENV_BUILD_NUMBER]
            else:
                latest = latest_build_tag_number(self.build_tags())
                self._build_number = str(latest + 1)
            self.log.debug("build number: %s", self._build_number)
        return self._build_number

    def build_tags(self) -> list[str]:
        """Existing build counter tags, from GitHub or the local repo."""
        if self.github is not None:
            return self.github.list_tags(BUILD_TAG_PREFIX)
        output = self.run(["git", "tag", "--list", f"{BUILD_TAG_PREFIX}*"])
        return output.split()

    def tag_build(self) -> str:
        """Tag the current commit with this run's build number.

        Returns:
            The tag name
        """
        tag = f"{BUILD_TAG_PREFIX}{self.build_number}"
        if self.github is not None:
            sha = self.environ.get(ENV_GITHUB_SHA)
            if not sha:
                raise ConfigurationError(
                    f"{ENV_GITHUB_SHA} is required to tag on GitHub"
                )
            if self.dry_run:
                self.log.info("[DRY RUN] create tag %s at %s", tag, sha)
            else:
                self.github.create_tag(tag, sha)
        else:
            self.run(["git", "tag", tag])
            self.run(["git", "push", "origin", tag])
        self.log.info("Tagged build: %s", tag)
        return tag


def latest_build_tag_number(tags: list[str]) -> int:
    """Highest counter among ``build/<n>`` tags, 0 when there are none."""
    pattern = re.compile(r"^" + re.escape(BUILD_TAG_PREFIX) + r"(\d+)$")
    numbers = [
        int(match.group(1))
        for match in (pattern.match(tag) for tag in tags)
        if match
    ]
    return max(numbers, default=0)


# ----------------------------------------------------------------------------
# GitHub API


class GitHubClient:
    """Minimal GitHub REST client for build tags.

    Args:
        token: API token (GITHUB_TOKEN)
        repository: ``owner/name`` (GITHUB_REPOSITORY)
        api_url: API root
    """

    API_URL = "https://api.github.com"

    def __init__(
        self, token: str, repository: str, api_url: str = API_URL
    ) -> None:
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )
        self.log = logging.getLogger(self.__class__.__name__)

    def _url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.repository}/{path}"

    def _request(self, method: str, path: str, **kwargs: object) -> object:
        url = self._url(path)
        self.log.debug("%s %s", method, url)
        try:
            response = self.session.request(method, url, timeout=30, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            raise GitHubError(f"{method} {url} failed: {e}") from e
        return response.json()

    def list_tags(self, prefix: str) -> list[str]:
        """Names of the tags starting with prefix."""
        refs = self._request("GET", f"git/matching-refs/tags/{prefix}")
        return [ref["ref"].removeprefix("refs/tags/") for ref in refs]

    def create_tag(self, tag: str, sha: str) -> None:
        """Create a lightweight tag pointing at sha."""
        self._request(
            "POST",
            "git/refs",
            json={"ref": f"refs/tags/{tag}", "sha": sha},
        )
        self.log.info("created tag %s at %s", tag, sha)


# ----------------------------------------------------------------------------
# Settings and project model


class BuildSettings:
    """Signing and sdk settings with parent fallback.

    Each field holds an optional local override. Reading a field returns
    the local value when set, otherwise the nearest ancestor's value, or
    None when no settings object in the chain sets it.
    """

    FIELDS = ("sdk", "code_signing_identity", "certificate", "code_sign_style")

    def __init__(
        self,
        sdk: str | None = None,
        code_signing_identity: str | None = None,
        certificate: str | None = None,
        code_sign_style: str | None = None,
        parent: "BuildSettings | None" = None,
    ) -> None:
        self.overrides: dict[str, str | None] = {
            "sdk": sdk,
            "code_signing_identity": code_signing_identity,
            "certificate": certificate,
            "code_sign_style": code_sign_style,
        }
        self.parent = parent

    def resolve(self, name: str) -> str | None:
        """Walk the parent chain for the first value set for name."""
        if name not in self.FIELDS:
            raise ConfigurationError(f"Unknown build setting: {name}")
        node: BuildSettings | None = self
        while node is not None:
            value = node.overrides[name]
            if value is not None:
                return value
            node = node.parent
        return None

    @property
    def sdk(self) -> str | None:
        return self.resolve("sdk")

    @property
    def code_signing_identity(self) -> str | None:
        return self.resolve("code_signing_identity")

    @property
    def certificate(self) -> str | None:
        return self.resolve("certificate")

    @property
    def code_sign_style(self) -> str | None:
        return self.resolve("code_sign_style")


def _construct(cls: type, kind: str, options: object) -> object:
    """Instantiate cls from a config mapping, turning binding errors into
    ConfigurationError."""
    if not isinstance(options, dict):
        raise ConfigurationError(f"Each {kind} must be a mapping: {options!r}")
    try:
        return cls(**options)
    except TypeError as e:
        raise ConfigurationError(f"Invalid {kind} {options!r}: {e}") from e


def _optional_str(value: object) -> str | None:
    # YAML reads `scheme: 2024` as an int
    return None if value is None else str(value)


class Project:
    """An Xcode workspace or project with its builds and tests.

    Owns the global settings that every Build and Test falls back to and
    the output directory layout.
    """

    def __init__(
        self,
        sdk: str | None = "iphoneos",
        code_signing_identity: str | None = "iPhone Distribution",
        certificate: str | None = None,
        code_sign_style: str | None = "Manual",
        workspace: str | None = None,
        project: str | None = None,
        build_dir: Pathlike = "./build",
        certificates_dir: Pathlike = "./certificates",
        provisioning_profiles_dir: Pathlike = "./profiles",
    ) -> None:
        self.settings = BuildSettings(
            sdk=sdk,
            code_signing_identity=code_signing_identity,
            certificate=certificate,
            code_sign_style=code_sign_style,
        )
        self.workspace = workspace
        self.project = project
        self.build_dir = Path(build_dir).absolute()
        self.certificates_dir = Path(certificates_dir).absolute()
        self.provisioning_profiles_dir = Path(
            provisioning_profiles_dir
        ).absolute()
        self.builds: list[Build] = []
        self.tests: list[Test] = []

    @classmethod
    def from_config(cls, config: dict[str, object]) -> "Project":
        """Build the project graph from a parsed config mapping."""
        options = dict(config)
        builds = options.pop("builds", None) or []
        tests = options.pop("tests", None) or []

        project = _construct(cls, "project", options)
        for build_options in builds:
            project.add_build(_construct(Build, "build", build_options))
        for test_options in tests:
            project.add_test(_construct(Test, "test", test_options))
        return project

    @classmethod
    def load(cls, config_path: Pathlike) -> "Project":
        """Load a project from a YAML file."""
        logging.getLogger(cls.__name__).info("Using %s", config_path)
        return cls.from_config(load_config(config_path))

    @property
    def artifacts_dir(self) -> Path:
        return self.build_dir / "Artifacts"

    @property
    def archives_dir(self) -> Path:
        return self.artifacts_dir / "Archives"

    @property
    def exports_dir(self) -> Path:
        return self.artifacts_dir / "Exports"

    @property
    def packages_dir(self) -> Path:
        return self.artifacts_dir / "Packages"

    @property
    def intermediates_dir(self) -> Path:
        return self.build_dir / "Intermediates"

    @property
    def precompiled_headers_dir(self) -> Path:
        return self.build_dir / "PrecompiledHeaders"

    def add_build(self, build: "Build") -> None:
        build.project = self
        build.settings.parent = self.settings
        self.builds.append(build)

    def add_test(self, test: "Test") -> None:
        test.project = self
        test.settings.parent = self.settings
        self.tests.append(test)

    def certificates(self) -> list[Path]:
        """Distinct certificate files referenced by the builds, in order."""
        paths: list[Path] = []
        for build in self.builds:
            if build.certificate:
                path = self.certificates_dir / build.certificate
                if path not in paths:
                    paths.append(path)
        return paths

    def provisioning_profiles(self) -> list[Path]:
        return sorted(self.provisioning_profiles_dir.glob("*.mobileprovision"))


class _Target:
    """Shared plumbing for Build and Test: settings and owning project."""

    def __init__(self, settings: BuildSettings) -> None:
        self.settings = settings
        self.project: Project | None = None

    @property
    def owner(self) -> Project:
        if self.project is None:
            raise ConfigurationError(f"{self!r} is not part of a project")
        return self.project

    @property
    def sdk(self) -> str | None:
        return self.settings.sdk

    @property
    def code_signing_identity(self) -> str | None:
        return self.settings.code_signing_identity

    @property
    def certificate(self) -> str | None:
        return self.settings.certificate

    @property
    def code_sign_style(self) -> str | None:
        return self.settings.code_sign_style


class Build(_Target):
    """A scheme to archive, export and upload.

    Args:
        scheme: Xcode scheme
        provisioning_profile: Provisioning profile specifier
        configuration: Build configuration (default: Release)
        export_options_plist: Plist passed to ``-exportOptionsPlist``
        app_id: App Store Connect Apple ID, required for upload
        sdk, code_signing_identity, certificate, code_sign_style:
            Overrides of the project settings
    """

    def __init__(
        self,
        scheme: str,
        provisioning_profile: str,
        configuration: str | None = "Release",
        export_options_plist: str = "ExportOptions.plist",
        app_id: str | int | None = None,
        sdk: str | None = None,
        code_signing_identity: str | None = None,
        certificate: str | None = None,
        code_sign_style: str | None = None,
    ) -> None:
        super().__init__(
            BuildSettings(
                sdk=sdk,
                code_signing_identity=code_signing_identity,
                certificate=certificate,
                code_sign_style=code_sign_style,
            )
        )
        self.scheme = str(scheme)
        self.provisioning_profile = _optional_str(provisioning_profile)
        self.configuration = _optional_str(configuration)
        self.export_options_plist = str(export_options_plist)
        self.app_id = _optional_str(app_id)

    def __repr__(self) -> str:
        return f"Build({self.name!r})"

    @property
    def name(self) -> str:
        parts = [self.scheme]
        if self.configuration:
            parts.append(self.configuration)
        if self.provisioning_profile:
            parts.append(self.provisioning_profile)
        return re.sub(r"\s", "_", "-".join(parts))

    @property
    def archive_path(self) -> Path:
        return self.owner.archives_dir / f"{self.name}.xcarchive"

    @property
    def export_path(self) -> Path:
        return self.owner.exports_dir / self.name

    @property
    def ipa_path(self) -> Path:
        return self.export_path / f"{self.scheme}.ipa"

    @property
    def package_path(self) -> Path:
        return self.owner.packages_dir / f"{self.name}.itmsp"

    @property
    def platform(self) -> str | None:
        return SDK_PLATFORMS.get(self.sdk or "")


class Test(_Target):
    """A scheme to run ``xcodebuild test`` against.

    Args:
        scheme: Xcode scheme
        destinations: ``-destination`` specifiers
        test_plan: Optional test plan name
        configuration: Optional build configuration
    """

    def __init__(
        self,
        scheme: str,
        destinations: list[str] | None = None,
        test_plan: str | None = None,
        configuration: str | None = None,
        sdk: str | None = "iphonesimulator",
        code_signing_identity: str | None = None,
        certificate: str | None = None,
        code_sign_style: str | None = None,
    ) -> None:
        super().__init__(
            BuildSettings(
                sdk=sdk,
                code_signing_identity=code_signing_identity,
                certificate=certificate,
                code_sign_style=code_sign_style,
            )
        )
        self.scheme = str(scheme)
        self.destinations = [str(d) for d in destinations or []]
        self.test_plan = _optional_str(test_plan)
        self.configuration = _optional_str(configuration)

    def __repr__(self) -> str:
        return f"Test({self.scheme!r})"

    @property
    def log_path(self) -> Path:
        return self.owner.build_dir / f"{self.scheme}-test.log"

    @property
    def junit_path(self) -> Path:
        return self.owner.build_dir / f"{self.scheme}-junit.xml"


# ----------------------------------------------------------------------------
# xcodebuild command assembly


class Runner:
    """Translate Builds and Tests into xcodebuild invocations.

    Example:
        runner = Runner(BuildContext())
        runner.archive(build)
        runner.export_archive(build)
    """

    def __init__(self, context: BuildContext) -> None:
        self.context = context
        self.log = logging.getLogger(self.__class__.__name__)

    def xcodebuild_command(
        self,
        project: Project,
        scheme: str,
        configuration: str | None,
        args: list[str],
        action: str,
        build_settings: list[str],
    ) -> list[str]:
        """Assemble a full xcodebuild argument list.

        Raises:
            ConfigurationError: If neither project nor workspace is set
        """
        command = ["xcodebuild"]
        if project.project:
            command += ["-project", project.project]
        elif project.workspace:
            command += ["-workspace", project.workspace]
        else:
            raise ConfigurationError(
                "Either 'workspace' or 'project' must be configured"
            )

        command += ["-scheme", scheme]
        if configuration:
            command += ["-configuration", configuration]

        command += args
        command.append(action)

        command.append(f"OBJROOT={project.intermediates_dir}")
        command.append(
            f"SHARED_PRECOMPS_DIR={project.precompiled_headers_dir}"
        )
        command.append(f"BUILD_NUMBER={self.context.build_number}")
        command += build_settings
        return command

    def archive_build_settings(self, build: Build) -> list[str]:
        settings = []
        if build.certificate and not self.context.is_dev_build:
            settings.append(
                f"OTHER_CODE_SIGN_FLAGS=--keychain {self.context.keychain_name}"
            )
        if build.code_sign_style:
            settings.append(f"CODE_SIGN_STYLE={build.code_sign_style}")
        if build.code_signing_identity:
            settings.append(
                f"CODE_SIGN_IDENTITY={build.code_signing_identity}"
            )
        if build.provisioning_profile:
            settings.append(
                f"PROVISIONING_PROFILE_SPECIFIER={build.provisioning_profile}"
            )
        return settings

    def archive_command(self, build: Build) -> list[str]:
        args = ["-archivePath", str(build.archive_path)]
        if build.sdk:
            args += ["-sdk", build.sdk]
        return self.xcodebuild_command(
            build.owner,
            build.scheme,
            build.configuration,
            args,
            "archive",
            self.archive_build_settings(build),
        )

    def export_command(self, build: Build) -> list[str]:
        return [
            "xcodebuild",
            "-exportArchive",
            "-exportOptionsPlist",
            build.export_options_plist,
            "-archivePath",
            str(build.archive_path),
            "-exportPath",
            str(build.export_path),
        ]

    def test_command(self, test: Test) -> list[str]:
        args = []
        if test.sdk:
            args += ["-sdk", test.sdk]
        for destination in test.destinations:
            args += ["-destination", destination]
        if test.test_plan:
            args += ["-testPlan", test.test_plan]
        return self.xcodebuild_command(
            test.owner, test.scheme, test.configuration, args, "test", []
        )

    def archive(self, build: Build) -> Path:
        """Run ``xcodebuild archive`` for a build."""
        self.log.info("Archiving %s", build.name)
        self._xcodebuild(self.archive_command(build))
        return build.archive_path

    def export_archive(self, build: Build) -> Path:
        """Run ``xcodebuild -exportArchive`` for a build."""
        self.log.info("Exporting %s", build.name)
        self._xcodebuild(self.export_command(build))
        return build.ipa_path

    def test(self, test: Test) -> Path:
        """Run ``xcodebuild test`` and convert its log to JUnit XML.

        Returns:
            Path to the JUnit report
        """
        self.log.info("Testing %s", test.scheme)
        self._xcodebuild(self.test_command(test), stdout=test.log_path)
        self.process_test_log(test)
        return test.junit_path

    def process_test_log(self, test: Test) -> None:
        """Strip the success banner and feed the log to xcpretty."""
        if not self.context.dry_run:
            fix_test_output(test.log_path)
        self.context.run(
            [
                "xcpretty",
                "--report",
                "junit",
                "--output",
                str(test.junit_path),
            ],
            stdin=test.log_path,
            capture=False,
        )

    def _xcodebuild(
        self, command: list[str], stdout: Pathlike | None = None
    ) -> None:
        self.context.run(
            command,
            env=self.context.xcode_environ(),
            stdout=stdout,
            capture=False,
        )


def fix_test_output(test_log: Pathlike) -> None:
    """Remove the trailing success banner xcpretty chokes on."""
    path = Path(test_log)
    content = path.read_text()
    path.write_text(content.replace("** TEST SUCCEEDED **\n\n", "", 1))


# ----------------------------------------------------------------------------
# Packaging and upload


class Package:
    """An exported artifact ready to be staged for App Store Connect.

    Args:
        ipa_path: Path to the .ipa (or .pkg) file
        app_id: App Store Connect Apple ID
        platform: Upload platform (ios, appletvos, osx)
    """

    CHUNK_SIZE = 64 * 1024

    def __init__(
        self, ipa_path: Pathlike, app_id: str | None, platform: str | None
    ) -> None:
        self.ipa_path = Path(ipa_path)
        self.app_id = app_id
        self.platform = platform

    @classmethod
    def for_build(cls, build: Build) -> "Package":
        """Package for a build's exported ipa.

        Raises:
            PackagingError: If the build has no app_id or known platform
        """
        if not build.app_id:
            raise PackagingError(f"{build.name}: app_id is required to upload")
        if not build.platform:
            raise PackagingError(
                f"{build.name}: no upload platform for sdk {build.sdk!r}"
            )
        return cls(build.ipa_path, build.app_id, build.platform)

    @property
    def safe_filename(self) -> str:
        # iTMSTransporter rejects spaces in the file name
        return self.ipa_path.name.replace(" ", "-")

    def md5(self) -> str:
        digest = hashlib.md5()
        with open(self.ipa_path, "rb") as f:
            for chunk in iter(lambda: f.read(self.CHUNK_SIZE), b""):
                digest.update(chunk)
        return digest.hexdigest()

    def size(self) -> int:
        return self.ipa_path.stat().st_size

    def metadata_xml(self) -> str:
        return METADATA_XML_TMPL.format(
            app_id=self.app_id,
            platform=self.platform,
            file_name=self.safe_filename,
            checksum=self.md5(),
            size=self.size(),
        )

    def make_itmsp(self, package_path: Pathlike) -> Path:
        """Create the directory passed to iTMSTransporter via ``-f``.

        It holds a copy of the artifact and a ``metadata.xml`` describing
        it. The directory typically has an ``.itmsp`` extension.
        """
        package_path = Path(package_path)
        package_path.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.ipa_path, package_path / self.safe_filename)
        (package_path / "metadata.xml").write_text(self.metadata_xml())
        return package_path


class Uploader:
    """Upload packages to App Store Connect.

    Credentials are passed as ``@env:`` references so they never appear
    on a command line or in the logs.

    Args:
        context: Run context
        tool: ``altool`` or ``transporter``
        username: Credential reference for the account name
        password: Credential reference for the app-specific password
    """

    def __init__(
        self,
        context: BuildContext,
        tool: str = "altool",
        username: str = f"@env:{ENV_APP_STORE_CONNECT_USER}",
        password: str = f"@env:{ENV_APP_STORE_CONNECT_PASSWORD}",
    ) -> None:
        if tool not in UPLOAD_TOOLS:
            raise ConfigurationError(
                f"Unknown upload tool {tool!r} (expected one of "
                f"{', '.join(UPLOAD_TOOLS)})"
            )
        self.context = context
        self.tool = tool
        self.username = username
        self.password = password
        self.log = logging.getLogger(self.__class__.__name__)

    def transporter_path(self) -> Path:
        """Locate iTMSTransporter inside the active Xcode.

        Raises:
            PackagingError: If it cannot be found
        """
        search_root = self.context.xcode_path().parent
        for path in search_root.rglob("iTMSTransporter"):
            if path.is_file():
                return path
        raise PackagingError(f"iTMSTransporter not found under {search_root}")

    def altool_command(self, package: Package) -> list[str]:
        return [
            "xcrun",
            "altool",
            "--upload-app",
            "--type",
            str(package.platform),
            "--file",
            str(package.ipa_path),
            "--username",
            self.username,
            "--password",
            self.password,
        ]

    def transporter_command(
        self, transporter: Pathlike, package_path: Pathlike
    ) -> list[str]:
        return [
            str(transporter),
            "-m",
            "upload",
            "-f",
            str(package_path),
            "-u",
            self.username,
            "-p",
            self.password,
            "-v",
            "detailed",
        ]

    def upload(self, package: Package) -> None:
        """Upload a package with the configured tool."""
        self.log.info("Uploading %s with %s", package.ipa_path, self.tool)
        if self.tool == "altool":
            self.context.run(self.altool_command(package), capture=False)
            return

        transporter = self.transporter_path()
        with tempfile.TemporaryDirectory() as tmpdir:
            package_path = Path(tmpdir) / f"{package.ipa_path.stem}.itmsp"
            if self.context.dry_run:
                self.log.info("[DRY RUN] stage %s", package_path)
            else:
                package.make_itmsp(package_path)
            self.context.run(
                self.transporter_command(transporter, package_path),
                capture=False,
            )

    def upload_packages(self, packages_dir: Pathlike) -> list[Path]:
        """Upload every staged ``.itmsp`` package in a directory.

        Returns:
            The uploaded package paths
        """
        packages = sorted(Path(packages_dir).glob("*.itmsp"))
        if not packages:
            self.log.warning("No packages found in %s", packages_dir)
            return []
        transporter = self.transporter_path()
        for package_path in packages:
            self.context.run(
                self.transporter_command(transporter, package_path),
                capture=False,
            )
        return packages


# ----------------------------------------------------------------------------
# Transient signing resources


class Keychain:
    """Temporary keychain holding the distribution certificates.

    Used as a context manager: entering creates and activates the keychain
    and imports the certificates; exiting deletes it and restores the
    user's keychain search list.

    Example:
        with Keychain(context, [Path("certificates/Dist.p12")]):
            runner.archive(build)
    """

    def __init__(
        self, context: BuildContext, certificates: list[Path]
    ) -> None:
        self.context = context
        self.certificates = certificates
        self.name = context.keychain_name
        self.original_keychains: list[str] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def security(self, *args: str) -> str:
        return self.context.run(["security", *args])

    def create(self) -> None:
        output = self.security("list-keychains", "-d", "user")
        self.original_keychains = shlex.split(output)
        self.security("create-keychain", "-p", "", self.name)

    def activate(self) -> None:
        self.security("unlock-keychain", "-p", "", self.name)
        self.security("default-keychain", "-d", "user", "-s", self.name)
        self.security("list-keychains", "-s", self.name, SYSTEM_KEYCHAIN)

    def import_certificate(self, certificate: Path) -> None:
        self.log.info("Importing certificate %s", certificate)
        password = self.context.environ.get(ENV_CERTIFICATE_PASSWORD, "")
        self.security(
            "import",
            str(certificate),
            "-k",
            self.name,
            "-t",
            "cert",
            "-f",
            "pkcs12",
            "-T",
            "/usr/bin/codesign",
            "-T",
            "/usr/bin/xcodebuild",
            "-P",
            password,
        )

    def delete(self) -> list[CommandError]:
        """Delete the keychain and restore the user's keychains.

        Every step runs even when an earlier one fails. Failures are
        logged and returned.
        """
        self.log.info("Removing keychain %s", self.name)
        errors = []
        for args in (
            ("delete-keychain", self.name),
            ("list-keychains", "-s", *self.original_keychains),
            ("default-keychain", "-s", "login.keychain"),
        ):
            try:
                self.security(*args)
            except CommandError as e:
                self.log.error("Keychain cleanup failed: %s", e)
                errors.append(e)
        return errors

    def __enter__(self) -> "Keychain":
        self.create()
        try:
            self.activate()
            for certificate in self.certificates:
                self.import_certificate(certificate)
            self.security(
                "set-key-partition-list",
                "-S",
                "apple-tool:,apple:",
                "-s",
                "-k",
                "",
                self.name,
            )
            self.security("set-keychain-settings", "-lut", "3600", self.name)
        except BaseException:
            self.delete()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        errors = self.delete()
        # a cleanup failure must not replace the build's own error
        if errors and exc_type is None:
            raise errors[0]


class ProvisioningProfiles:
    """Install provisioning profiles for the duration of a build."""

    def __init__(
        self,
        context: BuildContext,
        profiles: list[Path],
        profiles_dir: Pathlike = PROVISIONING_PROFILES_DIR,
    ) -> None:
        self.context = context
        self.profiles = profiles
        self.profiles_dir = Path(profiles_dir).expanduser()
        self.installed: list[Path] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def __enter__(self) -> "ProvisioningProfiles":
        if self.context.dry_run:
            for profile in self.profiles:
                self.log.info(
                    "[DRY RUN] copy %s to %s", profile, self.profiles_dir
                )
            return self
        if not self.profiles_dir.exists():
            self.log.info("Creating %s", self.profiles_dir)
            self.profiles_dir.mkdir(parents=True)
        try:
            for profile in self.profiles:
                self.log.info("Copying %s to %s", profile, self.profiles_dir)
                copy = self.profiles_dir / profile.name
                shutil.copyfile(profile, copy)
                self.installed.append(copy)
        except BaseException:
            self.remove()
            raise
        return self

    def remove(self) -> None:
        while self.installed:
            copy = self.installed.pop()
            self.log.info("Removing provisioning profile %s", copy)
            copy.unlink(missing_ok=True)

    def __exit__(self, *args: object) -> None:
        self.remove()


# ----------------------------------------------------------------------------
# Task graph


class Tasks:
    """Named build tasks with dependencies.

    Each requested task runs its dependencies first and every task runs at
    most once per ``run``. Resources registered on ``cleanup`` (keychain,
    provisioning profiles) are released when ``run`` returns or raises.

    Args:
        project: The project to build
        context: Run context (default: a fresh BuildContext)
        upload_tool: Tool used by deploy tasks (altool or transporter)
    """

    DEFAULT_TASK = "compile"

    # name: (description, dependencies)
    TASKS: dict[str, tuple[str, tuple[str, ...]]] = {
        "clean": ("Removes all generated build files.", ()),
        "dependencies": ("Install CocoaPods dependencies.", ()),
        "install_certificates": ("Install certificates.", ()),
        "install_provisioning_profiles": ("Install provisioning profiles.", ()),
        "initialize": (
            "Build initialization.",
            ("install_certificates", "install_provisioning_profiles"),
        ),
        "test": ("Runs unit tests.", ("initialize", "dependencies")),
        "compile": ("Compiles the project.", ("initialize", "dependencies")),
        "package": ("Creates .ipa files and upload packages.", ("compile",)),
        "deploy": ("Deploys the package files.", ("package", "deploy_only")),
        "deploy_only": ("Deploys a previously built package.", ()),
        "release_notes": (
            "Prepares release notes from Git commit messages.",
            (),
        ),
        "upload_packages": (
            "Uploads staged .itmsp packages with iTMSTransporter.",
            (),
        ),
    }

    def __init__(
        self,
        project: Project,
        context: BuildContext | None = None,
        upload_tool: str = "altool",
    ) -> None:
        self.project = project
        self.context = context or BuildContext()
        self.runner = Runner(self.context)
        self.uploader = Uploader(self.context, tool=upload_tool)
        self.cleanup = contextlib.ExitStack()
        self.completed: list[str] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def run(self, names: list[str] | None = None) -> list[str]:
        """Run tasks and their dependencies in order.

        Returns:
            Names of the tasks that ran, in execution order

        Raises:
            ConfigurationError: If a task name is unknown
        """
        names = names or [self.DEFAULT_TASK]
        for name in names:
            if name not in self.TASKS:
                raise ConfigurationError(f"Unknown task: {name}")

        self.completed = []
        with self.cleanup:
            for name in names:
                self.invoke(name)
        return list(self.completed)

    def invoke(self, name: str) -> None:
        if name in self.completed:
            return
        _, dependencies = self.TASKS[name]
        for dependency in dependencies:
            self.invoke(dependency)
        self.log.debug("task: %s", name)
        action = getattr(self, f"task_{name}", None)
        if action is not None:
            action()
        self.completed.append(name)

    def task_clean(self) -> None:
        if self.context.dry_run:
            self.log.info("[DRY RUN] remove %s", self.project.build_dir)
            return
        shutil.rmtree(self.project.build_dir, ignore_errors=True)

    def task_dependencies(self) -> None:
        if Path("Podfile").exists():
            self.context.run(["pod", "install"], capture=False)

    def task_install_certificates(self) -> None:
        if self.context.is_dev_build:
            self.log.info(
                "Not installing certificates because this is a developer build."
            )
            return
        certificates = self.project.certificates()
        if certificates:
            self.cleanup.enter_context(Keychain(self.context, certificates))

    def task_install_provisioning_profiles(self) -> None:
        if self.context.is_dev_build:
            self.log.info(
                "Not installing provisioning profiles because this is a "
                "developer build."
            )
            return
        profiles = self.project.provisioning_profiles()
        if profiles:
            self.cleanup.enter_context(
                ProvisioningProfiles(self.context, profiles)
            )

    def task_initialize(self) -> None:
        if not self.context.dry_run:
            self.project.build_dir.mkdir(parents=True, exist_ok=True)

    def task_test(self) -> None:
        for test in self.project.tests:
            self.runner.test(test)

    def task_compile(self) -> None:
        for build in self.project.builds:
            self.runner.archive(build)

    def task_package(self) -> None:
        for build in self.project.builds:
            self.runner.export_archive(build)
            if not build.app_id:
                self.log.info("Not staging %s: no app_id", build.name)
                continue
            package = Package.for_build(build)
            if self.context.dry_run:
                self.log.info("[DRY RUN] stage %s", build.package_path)
            else:
                package.make_itmsp(build.package_path)

    def task_deploy_only(self) -> None:
        for build in self.project.builds:
            if not build.app_id:
                self.log.info("Not uploading %s: no app_id", build.name)
                continue
            self.uploader.upload(Package.for_build(build))
        if self.context.is_ci_build:
            self.context.tag_build()
        else:
            self.log.info("Not tagging because this is a developer build.")

    def task_release_notes(self) -> None:
        try:
            # release tags only, never the build/<n> counters
            last_tag = self.context.run(
                [
                    "git",
                    "describe",
                    "--abbrev=0",
                    "--exclude",
                    f"{BUILD_TAG_PREFIX}*",
                ]
            ).strip()
        except CommandError:
            last_tag = ""
        revisions = f"{last_tag}..HEAD" if last_tag else "HEAD"
        log = self.context.run(
            ["git", "log", revisions, "--no-merges", "--format=- %s"]
        )
        notes = (
            "(These release notes are automatically generated from Git "
            "commit messages.)\n\n" + log
        )
        path = self.project.artifacts_dir / RELEASE_NOTES
        if self.context.dry_run:
            self.log.info("[DRY RUN] write %s", path)
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(notes)
        self.log.info("Wrote %s", path)

    def task_upload_packages(self) -> None:
        self.uploader.upload_packages(self.project.packages_dir)


# ----------------------------------------------------------------------------
# Command-line interface


def _list_tasks() -> None:
    width = max(len(name) for name in Tasks.TASKS)
    for name, (description, _) in Tasks.TASKS.items():
        print(f"{name:<{width}}  # {description}")


def main(argv: list[str] | None = None) -> None:
    """Command line interface for xcbuilder."""
    try:
        parser = argparse.ArgumentParser(
            prog="xcbuilder",
            description="Build, test, package and upload Xcode projects.",
            epilog=(
                "Examples:\n"
                "  xcbuilder\n"
                "  xcbuilder clean test\n"
                "  xcbuilder -f builds.yml deploy --upload-tool transporter\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "tasks",
            nargs="*",
            metavar="TASK",
            help=f"tasks to run (default: {Tasks.DEFAULT_TASK})",
        )
        parser.add_argument(
            "-f",
            "--file",
            metavar="FILE",
            help="path to the YAML build description",
        )
        parser.add_argument(
            "-T",
            "--list",
            action="store_true",
            help="list tasks and exit",
        )
        parser.add_argument(
            "--upload-tool",
            choices=UPLOAD_TOOLS,
            default="altool",
            help="tool used to upload builds (default: altool)",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="show commands without executing (or set DRY_RUN)",
        )
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="enable verbose/debug logging",
        )
        parser.add_argument(
            "--no-color",
            action="store_true",
            help="disable colored output",
        )
        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {__version__}",
        )

        args = parser.parse_args(argv)

        if args.list:
            _list_tasks()
            return

        load_dotenv(find_dotenv(usecwd=True))
        setup_logging(args.verbose, not args.no_color and sys.stderr.isatty())

        context = BuildContext(dry_run=True if args.dry_run else None)
        project = Project.load(find_config(args.file))
        tasks = Tasks(project, context, upload_tool=args.upload_tool)
        tasks.run(args.tasks)

    except BuilderError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()

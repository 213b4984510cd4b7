#!/usr/bin/env python3
"""buildphp.py - builds php versions from a cached php-src checkout

features:

- Builds a php version from the `php-<version>` tag of a cached php-src
  git repository into a phpenv-style `versions/<version>` layout.
- Fetches tags once if the requested version is not yet in the cache.
- Configures php with a fixed, boxen-flavoured set of feature flags.
- Behaves like a resource provider: `exists`, `create`, `destroy`, `ensure`.

class structure:

ShellCmd
    PhpenvLayout
    PhpSourceBuilder
    PhpVersion

"""

import argparse
import datetime
import logging
import os
import platform
import re
import shlex
import shutil
import stat
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Optional, Union

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


def setenv(key: str, default: str) -> str:
    """get environ variable if it is exists else set default"""
    if key in os.environ:
        return os.getenv(key, default) or default
    else:
        os.environ[key] = default
        return default


# ----------------------------------------------------------------------------
# constants

PLATFORM = platform.system()
ARCH = platform.machine()
PY_VER_MINOR = sys.version_info.minor

DEFAULT_PHPENV_ROOT = "/opt/boxen/phpenv"
DEFAULT_HOMEBREW_PATH = "/opt/boxen/homebrew"
DEFAULT_CONFIG_ROOT = "/opt/boxen/config/php"
DEFAULT_BASE_BRANCH = "master"
BUILD_BRANCH = "build"
TAG_PREFIX = "php-"
ENSURE_STATES = ("present", "absent")

VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+[A-Za-z0-9]*$")
# php 5.3.x needs the old autoconf 2.13; unanchored
AUTOCONF_213_PATTERN = re.compile(r"5\.3\..")

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=True)
COLOR = getenv("COLOR", default=True)
LOG_LEVEL = logging.DEBUG if DEBUG else logging.INFO

PHPENV_ROOT = setenv("PHPENV_ROOT", DEFAULT_PHPENV_ROOT)
HOMEBREW_PATH = os.getenv("BOXEN_HOMEBREW_PATH") or setenv(
    "HOMEBREW_PATH", DEFAULT_HOMEBREW_PATH
)
CONFIG_ROOT = setenv("PHP_CONFIG_ROOT", DEFAULT_CONFIG_ROOT)

# ----------------------------------------------------------------------------
# logging config


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
    cfmt = (
        f"{white}%(delta)s{reset} - "
        f"{{}}%(levelname)s{{}} - "
        f"{white}%(name)s.%(funcName)s{reset} - "
        f"{grey}%(message)s{reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(grey, reset),
        logging.INFO: cfmt.format(green, reset),
        logging.WARNING: cfmt.format(yellow, reset),
        logging.ERROR: cfmt.format(red, reset),
        logging.CRITICAL: cfmt.format(bold_red, reset),
    }

    def __init__(self, use_color: bool = COLOR) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        if PY_VER_MINOR > 10:
            duration = datetime.datetime.fromtimestamp(
                record.relativeCreated / 1000, datetime.UTC
            )
        else:
            duration = datetime.datetime.fromtimestamp(record.relativeCreated / 1000)
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


strm_handler = logging.StreamHandler()
strm_handler.setFormatter(CustomFormatter())
logging.basicConfig(
    level=LOG_LEVEL,
    handlers=[strm_handler],
)


# ----------------------------------------------------------------------------
# custom exceptions


class BuildError(Exception):
    """Base exception for build errors"""

    pass


class CommandError(BuildError):
    """Exception for command execution errors"""

    pass


class ValidationError(BuildError):
    """Exception for validation errors"""

    pass


class SourceRepositoryError(BuildError):
    """Raised when the cached php-src checkout is missing"""

    pass


class VersionNotFoundError(BuildError):
    """Raised when a version tag is absent even after fetching tags"""

    pass


# ----------------------------------------------------------------------------
# validation helpers


def validate_version(version: str) -> str:
    """return version unchanged if it looks like a php release: 7.4.33, 5.4.0RC1"""
    if not VERSION_PATTERN.match(version):
        raise ValidationError(f"Invalid php version: {version!r}")
    return version


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Provides platform agnostic file/folder handling."""

    log: logging.Logger

    def cmd(
        self,
        shellcmd: Union[str, list[str]],
        cwd: Pathlike = ".",
        env: Optional[dict[str, str]] = None,
    ) -> None:
        """Run shell command within working directory

        Args:
            shellcmd: Command as string (will be split safely) or list of args
            cwd: Working directory for command execution
            env: Extra environment variables layered over os.environ

        Raises:
            CommandError: If command execution fails
        """
        self.log.info(shellcmd if isinstance(shellcmd, str) else " ".join(shellcmd))
        _env = None
        if env:
            _env = os.environ.copy()
            _env.update(env)
        try:
            if isinstance(shellcmd, str):
                if any(
                    char in shellcmd for char in ["|", ">", "<", "&", ";", "&&", "||"]
                ):
                    subprocess.check_call(shellcmd, shell=True, cwd=str(cwd), env=_env)
                else:
                    subprocess.check_call(shlex.split(shellcmd), cwd=str(cwd), env=_env)
            else:
                subprocess.check_call(shellcmd, cwd=str(cwd), env=_env)
        except subprocess.CalledProcessError as e:
            self.log.critical("Command failed: %s", e, exc_info=True)
            raise CommandError(f"Command failed: {shellcmd}") from e

    def get(self, shellcmd: str, cwd: Pathlike = ".", shell: bool = False) -> str:
        """get output of shellcmd"""
        shellcmd_list: Union[str, list[str]] = shellcmd
        if not shell:
            shellcmd_list = shellcmd.split()
        try:
            return subprocess.check_output(
                shellcmd_list, encoding="utf8", shell=shell, cwd=str(cwd)
            ).strip()
        except subprocess.CalledProcessError as e:
            self.log.critical("Command failed: %s", e)
            raise CommandError(f"Command failed: {shellcmd}") from e

    def fail(self, msg: str, *args: str) -> str:
        """Raise BuildError with formatted message

        Args:
            msg: Error message format string
            *args: Format arguments

        Raises:
            BuildError: Always raised with formatted message

        Returns:
            Never returns (always raises), but typed as str for property compatibility
        """
        formatted_msg = msg % args if args else msg
        self.log.critical(formatted_msg)
        raise BuildError(formatted_msg)

    def git_clone(
        self,
        url: str,
        branch: Optional[str] = None,
        directory: Optional[Pathlike] = None,
        depth: Optional[int] = None,
        cwd: Pathlike = ".",
    ) -> None:
        """git clone a repository source tree from a url

        Args:
            url: Git repository URL
            branch: Optional branch/tag to checkout
            directory: Optional destination directory
            depth: Optional history depth (tags need the full history)
            cwd: Working directory

        Raises:
            ValidationError: If URL is invalid
            CommandError: If git clone fails
        """
        if not url.startswith(("https://", "http://", "git://", "ssh://", "git@")):
            raise ValidationError(f"Invalid git URL: {url}")

        _cmds = ["git", "clone"]
        if depth:
            _cmds.extend(["--depth", str(depth)])
        if branch:
            _cmds.extend(["--branch", branch])
        _cmds.append(url)
        if directory:
            _cmds.append(str(directory))
        self.cmd(_cmds, cwd=cwd)

    def makedirs(self, path: Pathlike, mode: int = 511, exist_ok: bool = True) -> None:
        """Recursive directory creation function"""
        self.log.debug("Making directory: %s", path)
        os.makedirs(path, mode, exist_ok)

    def remove(self, path: Pathlike, silent: bool = False) -> None:
        """Remove file or folder."""

        # handle read-only files left behind by git objects
        def remove_readonly(func: Callable[..., Any], path: str, exc_info: Any) -> None:
            "Clear the readonly bit and reattempt the removal"
            if func not in (os.unlink, os.rmdir):
                raise exc_info if PY_VER_MINOR >= 12 else exc_info[1]
            os.chmod(path, stat.S_IWRITE)
            func(path)

        path = Path(path)
        if path.is_dir() and not path.is_symlink():
            if not silent:
                self.log.debug("Removing folder: %s", path)
            if PY_VER_MINOR < 12:
                shutil.rmtree(path, onerror=remove_readonly)
            else:
                shutil.rmtree(path, onexc=remove_readonly)
        else:
            if not silent:
                self.log.debug("Removing file: %s", path)
            try:
                path.unlink()
            except FileNotFoundError:
                if not silent:
                    self.log.debug("File not found: %s", path)


# ----------------------------------------------------------------------------
# main classes


class PhpenvLayout(ShellCmd):
    """Utility class to hold the phpenv directory structure"""

    def __init__(
        self,
        root: Optional[Pathlike] = None,
        config_root: Optional[Pathlike] = None,
    ) -> None:
        self.root = Path(root or PHPENV_ROOT)
        self.src = self.root / "php-src"
        self.git_dir = self.src / ".git"
        self.versions = self.root / "versions"
        self.config_root = Path(config_root or CONFIG_ROOT)
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.root}'>"

    def version_dir(self, version: str) -> Path:
        """install prefix of a version: <root>/versions/7.4.33"""
        return self.versions / version

    def config_dir(self, version: str) -> Path:
        """php.ini location of a version: <config_root>/7.4.33"""
        return self.config_root / version

    def has_source(self) -> bool:
        """true if the cached php-src checkout is a git repository"""
        return self.git_dir.is_dir()

    def setup(self) -> None:
        """create the versions directory"""
        self.makedirs(self.versions)


class PhpSourceBuilder(ShellCmd):
    """Builds php versions from the cached php-src repository"""

    name = "php"

    config_options: list[str] = [
        "--with-iconv-dir=/usr",
        "--enable-dba",
        "--with-ndbm=/usr",
        "--enable-exif",
        "--enable-soap",
        "--enable-wddx",
        "--enable-ftp",
        "--enable-sockets",
        "--enable-zip",
        "--enable-pcntl",
        "--enable-shmop",
        "--enable-sysvsem",
        "--enable-sysvshm",
        "--enable-sysvmsg",
        "--enable-mbstring",
        "--enable-mbregex",
        "--enable-bcmath",
        "--enable-calendar",
        "--with-ldap",
        "--with-ldap-sasl=/usr",
        "--with-xmlrpc",
        "--with-kerberos=/usr",
        "--with-xsl=/usr",
        "--with-gd",
        "--enable-gd-native-ttf",
    ]

    # configure option -> homebrew formula, rooted at <homebrew>/opt/<formula>
    homebrew_options: list[tuple[str, str]] = [
        ("--with-freetype-dir", "freetype"),
        ("--with-jpeg-dir", "jpeg"),
        ("--with-png-dir", "libpng"),
        ("--with-gettext", "gettext"),
        ("--with-gmp", "gmp"),
        ("--with-zlib", "zlib"),
    ]

    system_options: list[str] = [
        "--with-snmp=/usr",
        "--with-libedit",
        "--with-mhash",
        "--with-curl",
        "--with-openssl=/usr",
        "--with-bz2=/usr",
    ]

    mysql_options: list[str] = [
        "--with-mysql-sock=/tmp/mysql.sock",
        "--with-mysqli=mysqlnd",
        "--with-mysql=mysqlnd",
        "--with-pdo-mysql=mysqlnd",
    ]

    sapi_options: list[str] = [
        "--enable-fpm",
    ]

    def __init__(
        self,
        layout: Optional[PhpenvLayout] = None,
        homebrew_path: Optional[Pathlike] = None,
        cfg_opts: Optional[list[str]] = None,
        jobs: int = 1,
        base_branch: str = DEFAULT_BASE_BRANCH,
    ) -> None:
        self.layout = layout or PhpenvLayout()
        self.homebrew_path = Path(homebrew_path or HOMEBREW_PATH)
        self.cfg_opts = cfg_opts or []
        self.jobs = jobs
        self.base_branch = base_branch
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.layout.src}'>"

    @property
    def src_dir(self) -> Path:
        """the cached php-src checkout"""
        return self.layout.src

    @staticmethod
    def tag(version: str) -> str:
        """git tag of a version: php-7.4.33"""
        return f"{TAG_PREFIX}{version}"

    def autoconf(self, version: str) -> Path:
        """autoconf binary used by buildconf"""
        name = "autoconf"
        if AUTOCONF_213_PATTERN.search(version):
            name += "213"
        return self.homebrew_path / "bin" / name

    def make_cmd(self, *targets: str) -> str:
        """make invocation honouring the number of jobs"""
        _cmds = ["make"]
        if self.jobs > 1:
            _cmds.append(f"-j{self.jobs}")
        _cmds.extend(targets)
        return " ".join(_cmds)

    # ------------------------------------------------------------------------
    # source cache

    def version_present_in_cache(self, version: str) -> bool:
        """check for the version tag within the php-src repository"""
        tag = self.tag(version)
        return self.get(f"git tag -l {tag}", cwd=self.src_dir) == tag

    def update_repository(self) -> None:
        """fetch new tags from the remote repository"""
        self.log.info("Fetching tags into %s", self.src_dir)
        self.cmd("git fetch --tags", cwd=self.src_dir)

    def confirm_cached_source(self, version: str) -> None:
        """check the cached repository is in place and carries the version tag"""
        if not self.layout.has_source():
            self.log.critical("no git repository at %s", self.src_dir)
            raise SourceRepositoryError("Source repository is not present")

        if not self.version_present_in_cache(version):
            self.update_repository()
            if not self.version_present_in_cache(version):
                self.log.critical("tag %s not found after fetch", self.tag(version))
                raise VersionNotFoundError(f"Version {version} not found in PHP source")

    def fetch_source(self, url: str) -> None:
        """clone php-src into the layout if it is not already there"""
        if self.layout.has_source():
            self.log.info("php-src already cached at %s", self.src_dir)
            return
        self.makedirs(self.layout.root)
        self.git_clone(url, directory=self.src_dir)

    # ------------------------------------------------------------------------
    # build steps

    def build_branch_exists(self) -> bool:
        """true if a previous build branch is still around"""
        return bool(self.get(f"git branch --list {BUILD_BRANCH}", cwd=self.src_dir))

    def prep_build(self, version: str) -> None:
        """checkout the version tag as the build branch and clean the tree"""
        self.cmd(["git", "checkout", "-f", self.base_branch], cwd=self.src_dir)
        if self.build_branch_exists():
            self.cmd(["git", "branch", "-D", BUILD_BRANCH], cwd=self.src_dir)
        self.cmd(
            ["git", "checkout", self.tag(version), "-b", BUILD_BRANCH],
            cwd=self.src_dir,
        )
        self.cmd("git clean -f -d -x", cwd=self.src_dir)

    def get_configure_args(
        self, version: str, install_path: Pathlike, config_path: Pathlike
    ) -> list[str]:
        """default set of configure options for a version"""
        args = [
            f"--prefix={install_path}",
            "--localstatedir=/var",
            f"--sysconfdir={config_path}",
            f"--with-config-file-path={config_path}",
            f"--with-config-file-scan-dir={config_path}/conf.d",
        ]
        args.extend(self.config_options)
        args.extend(
            f"{opt}={self.homebrew_path / 'opt' / formula}"
            for opt, formula in self.homebrew_options
        )
        args.extend(self.system_options)
        args.extend(self.mysql_options)
        args.extend(self.sapi_options)

        for cfg_opt in self.cfg_opts:
            if not cfg_opt.startswith("--"):
                cfg_opt = "--" + cfg_opt.replace("_", "-")
            if cfg_opt not in args:
                args.append(cfg_opt)
        return args

    def configure(self, version: str) -> None:
        """run buildconf and configure for this system"""
        self.remove(self.src_dir / "configure", silent=True)
        self.remove(self.src_dir / "autom4te.cache", silent=True)

        self.cmd(
            "./buildconf --force",
            cwd=self.src_dir,
            env={"PHP_AUTOCONF": str(self.autoconf(version))},
        )

        args = self.get_configure_args(
            version,
            self.layout.version_dir(version),
            self.layout.config_dir(version),
        )
        self.log.info("Configuring PHP %s: %s", version, " ".join(args))
        self.cmd(["./configure", *args], cwd=self.src_dir)

    def build(self) -> None:
        """compile php"""
        self.cmd(self.make_cmd(), cwd=self.src_dir)

    def install(self) -> None:
        """install to the version prefix"""
        self.layout.setup()
        self.cmd(self.make_cmd("install"), cwd=self.src_dir)

    def clean(self) -> None:
        """remove build products from the source tree"""
        self.cmd("make clean", cwd=self.src_dir)

    def validate_install(self, version: str) -> None:
        """check make install left a php binary in the version prefix"""
        php = self.layout.version_dir(version) / "bin" / "php"
        if not php.exists():
            self.fail("PHP %s did not install: %s missing", version, str(php))

    def process(self, version: str) -> None:
        """main builder process"""
        validate_version(version)
        self.log.info("Building PHP %s from %s", version, self.src_dir)
        self.confirm_cached_source(version)
        self.prep_build(version)
        self.configure(version)
        self.build()
        self.install()
        self.clean()
        self.validate_install(version)
        self.log.info("PHP %s installed to %s", version, self.layout.version_dir(version))

    def dry_run(self, version: str) -> None:
        """Display build plan without actually building.

        Nothing is checked out, configured or compiled; the cached source is
        only inspected for presence.
        """
        validate_version(version)
        args = self.get_configure_args(
            version,
            self.layout.version_dir(version),
            self.layout.config_dir(version),
        )

        print("\n" + "=" * 60)
        print("BUILD PLAN (dry-run)")
        print("=" * 60)

        print("\n[Build Target]")
        print(f"  PHP version:       {version}")
        print(f"  Source tag:        {self.tag(version)}")
        print(f"  Platform:          {PLATFORM} ({ARCH})")

        print("\n[Directories]")
        print(f"  phpenv root:       {self.layout.root}")
        print(f"  Source directory:  {self.src_dir}")
        print(f"  Source cached:     {self.layout.has_source()}")
        print(f"  Prefix:            {self.layout.version_dir(version)}")
        print(f"  Config directory:  {self.layout.config_dir(version)}")

        print("\n[Build Options]")
        print(f"  Autoconf:          {self.autoconf(version)}")
        print(f"  Base branch:       {self.base_branch}")
        print(f"  Parallel jobs:     {self.jobs}")

        print("\n[Commands]")
        for step in [
            f"git checkout -f {self.base_branch}",
            f"git branch -D {BUILD_BRANCH}",
            f"git checkout {self.tag(version)} -b {BUILD_BRANCH}",
            "git clean -f -d -x",
            "./buildconf --force",
            "./configure ...",
            self.make_cmd(),
            self.make_cmd("install"),
            "make clean",
        ]:
            print(f"  {step}")

        print(f"\n[Configure Options] ({len(args)})")
        for opt in args:
            print(f"  {opt}")

        print("\n" + "=" * 60)
        print("End of build plan. No changes were made.")
        print("=" * 60 + "\n")


class PhpVersion(ShellCmd):
    """php versions compiled from the official source code repository"""

    def __init__(
        self,
        version: str,
        phpenv_root: Optional[Pathlike] = None,
        homebrew_path: Optional[Pathlike] = None,
        config_root: Optional[Pathlike] = None,
        builder: Optional[PhpSourceBuilder] = None,
    ) -> None:
        self.version = validate_version(version)
        self.builder = builder or PhpSourceBuilder(
            PhpenvLayout(phpenv_root, config_root), homebrew_path
        )
        self.layout = self.builder.layout
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.version}'>"

    @property
    def prefix(self) -> Path:
        return self.layout.version_dir(self.version)

    def exists(self) -> bool:
        return self.prefix.is_dir()

    def create(self) -> None:
        """build the version, removing a partial install if any step fails"""
        try:
            self.builder.process(self.version)
        except BuildError:
            if self.exists():
                self.log.warning("Removing partial install at %s", self.prefix)
                self.remove(self.prefix)
            raise

    def destroy(self) -> None:
        self.log.info("Removing PHP %s from %s", self.version, self.prefix)
        self.remove(self.prefix)

    def ensure(self, state: str = "present") -> bool:
        """converge on `present` or `absent`, returning True if anything changed"""
        if state not in ENSURE_STATES:
            raise ValidationError(f"Invalid ensure state: {state!r}")
        if state == "present":
            if self.exists():
                self.log.info("PHP %s already installed", self.version)
                return False
            self.create()
            return True
        if not self.exists():
            self.log.info("PHP %s not installed", self.version)
            return False
        self.destroy()
        return True


def main(argv: Optional[list[str]] = None) -> None:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="buildphp",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Builds php versions from a cached php-src repository",
    )
    opt = parser.add_argument

    # fmt: off
    opt("version", help="php version to build, e.g. 7.4.33")
    opt("-e", "--ensure", default="present", choices=ENSURE_STATES, help="desired state (default: %(default)s)")
    opt("-r", "--phpenv-root", default=PHPENV_ROOT, help="phpenv root (default: %(default)s)", metavar="DIR")
    opt("-b", "--homebrew-path", default=HOMEBREW_PATH, help="homebrew prefix (default: %(default)s)", metavar="DIR")
    opt("-c", "--config-root", default=CONFIG_ROOT, help="php config root (default: %(default)s)", metavar="DIR")
    opt("-a", "--cfg-opts", help="add config options", type=str, nargs="+", metavar="CFG")
    opt("-j", "--jobs", help="# of build jobs (default: %(default)s)", type=int, default=1)
    opt("-B", "--base-branch", default=DEFAULT_BASE_BRANCH, help="branch reset to before checkout (default: %(default)s)")
    opt("-n", "--dry-run", help="show build plan without building", action="store_true")
    opt("--fetch-source", help="clone php-src from URL if not cached", metavar="URL")
    opt("-V", "--tool-version", action="version", version=f"%(prog)s {__version__}")
    # fmt: on

    args = parser.parse_args(argv)
    log = logging.getLogger("buildphp")

    try:
        layout = PhpenvLayout(args.phpenv_root, args.config_root)
        builder = PhpSourceBuilder(
            layout,
            homebrew_path=args.homebrew_path,
            cfg_opts=args.cfg_opts,
            jobs=args.jobs,
            base_branch=args.base_branch,
        )
        resource = PhpVersion(args.version, builder=builder)

        if args.dry_run:
            builder.dry_run(args.version)
            sys.exit(0)

        if args.fetch_source and args.ensure == "present":
            builder.fetch_source(args.fetch_source)

        resource.ensure(args.ensure)
    except BuildError as e:
        log.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()

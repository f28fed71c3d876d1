"""Run configuration: resolution from the environment or from the operator."""

import dataclasses
import logging
from pathlib import Path
import re
import shlex
from typing import Callable, Mapping, Sequence

from installubuntuonzfs.dialogs import Dialogs
from installubuntuonzfs.disks import DiskDescriptor, select_disks
from installubuntuonzfs.log import log_variables

_LOGGER = logging.getLogger(__name__)

POOL_NAME_RE = re.compile(r"[a-z][a-zA-Z0-9_:.-]+")
SIZE_RE = re.compile(r"[0-9]+")
MIN_PASSPHRASE_LENGTH = 8

DEFAULT_BPOOL_NAME = "bpool"
DEFAULT_RPOOL_NAME = "rpool"
DEFAULT_BPOOL_TWEAKS = "-o ashift=12"
DEFAULT_RPOOL_TWEAKS = (
    "-o ashift=12 -O acltype=posixacl -O compression=lz4 -O dnodesize=auto"
    " -O relatime=on -O xattr=sa -O normalization=formD"
)
DEFAULT_SWAP_SIZE = "2"
DEFAULT_FREE_TAIL_SPACE = "0"

ENV_OS_INSTALLATION_SCRIPT = "ZFS_OS_INSTALLATION_SCRIPT"
ENV_SELECTED_DISKS = "ZFS_SELECTED_DISKS"
ENV_ENCRYPT_RPOOL = "ZFS_ENCRYPT_RPOOL"
ENV_PASSPHRASE = "ZFS_PASSPHRASE"
ENV_BPOOL_NAME = "ZFS_BPOOL_NAME"
ENV_RPOOL_NAME = "ZFS_RPOOL_NAME"
ENV_BPOOL_TWEAKS = "ZFS_BPOOL_TWEAKS"
ENV_RPOOL_TWEAKS = "ZFS_RPOOL_TWEAKS"
ENV_NO_INFO_MESSAGES = "ZFS_NO_INFO_MESSAGES"
ENV_SWAP_SIZE = "ZFS_SWAP_SIZE"
ENV_FREE_TAIL_SPACE = "ZFS_FREE_TAIL_SPACE"
ENV_SKIP_LIVE_ZFS_MODULE_INSTALL = "ZFS_SKIP_LIVE_ZFS_MODULE_INSTALL"

ENVIRONMENT_HELP = [
    (
        ENV_OS_INSTALLATION_SCRIPT,
        "path of a script to execute instead of Ubiquity",
    ),
    (
        ENV_SELECTED_DISKS,
        "full path of the devices to create the pool on, comma-separated",
    ),
    (ENV_ENCRYPT_RPOOL, "set 1 to encrypt the pool"),
    (ENV_PASSPHRASE, "passphrase of the encrypted root pool"),
    (ENV_BPOOL_NAME, "name of the boot pool"),
    (ENV_RPOOL_NAME, "name of the root pool"),
    (
        ENV_BPOOL_TWEAKS,
        f"boot pool options to set on creation (defaults to `{DEFAULT_BPOOL_TWEAKS}`)",
    ),
    (
        ENV_RPOOL_TWEAKS,
        f"root pool options to set on creation (defaults to `{DEFAULT_RPOOL_TWEAKS}`)",
    ),
    (ENV_NO_INFO_MESSAGES, "set 1 to skip informational messages"),
    (ENV_SWAP_SIZE, "swap size in GiB (integer); set 0 for no swap"),
    (
        ENV_FREE_TAIL_SPACE,
        "leave free space at the end of each disk, in GiB (integer)",
    ),
    (
        ENV_SKIP_LIVE_ZFS_MODULE_INSTALL,
        "(debug) set 1 to skip installing the ZFS package on the live system",
    ),
]


class ValidationFailure(ValueError):
    """A configuration value is not acceptable."""


# zpool create switches that take no argument.  -d creates the pool with
# all features disabled, so that single features can be enabled with -o.
BARE_SWITCHES = ("-d",)


@dataclasses.dataclass(frozen=True)
class PoolOption:
    """An option given to zpool create.

    `flag` is -o for pool properties and -O for properties of the pool's
    root file system, both with a name and a value.  Bare switches such as
    -d have neither.
    """

    flag: str
    name: str | None = None
    value: str | None = None

    def args(self) -> list[str]:
        """Render the option as zpool create arguments."""
        if self.name is None:
            return [self.flag]
        return [self.flag, f"{self.name}={self.value}"]

    def __str__(self) -> str:
        """Render the option as it would be typed."""
        return " ".join(self.args())


def parse_pool_options(text: str) -> tuple[PoolOption, ...]:
    """Parse a tweak string like `-o ashift=12 -d -O compression=lz4`.

    Raises:
      ValidationFailure: the string holds something other than -o/-O
        name=value pairs and bare switches.
    """
    try:
        tokens = shlex.split(text)
    except ValueError as e:
        raise ValidationFailure(f"cannot parse pool options {text!r}: {e}") from e
    options: list[PoolOption] = []
    while tokens:
        flag = tokens.pop(0)
        if flag in BARE_SWITCHES:
            options.append(PoolOption(flag))
            continue
        if flag not in ("-o", "-O"):
            raise ValidationFailure(
                f"expected -o, -O or one of {', '.join(BARE_SWITCHES)}"
                f" in pool options {text!r}, got {flag!r}"
            )
        if not tokens:
            raise ValidationFailure(f"missing property after {flag} in {text!r}")
        name, sep, value = tokens.pop(0).partition("=")
        if not sep or not name or not value:
            raise ValidationFailure(
                f"expected name=value after {flag} in pool options {text!r}"
            )
        options.append(PoolOption(flag, name, value))
    return tuple(options)


def format_pool_options(options: Sequence[PoolOption]) -> str:
    """Render pool options back to a tweak string."""
    return " ".join(str(o) for o in options)


def is_valid_pool_name(name: str) -> bool:
    """Pool names start with a lowercase letter."""
    return bool(POOL_NAME_RE.fullmatch(name))


def is_valid_size(size: str) -> bool:
    """Sizes are non-negative integers, in GiB."""
    return bool(SIZE_RE.fullmatch(size))


def is_valid_passphrase(passphrase: str, repeated: str | None = None) -> bool:
    """Passphrases must be long enough, and match their repetition if any."""
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        return False
    return repeated is None or passphrase == repeated


@dataclasses.dataclass(frozen=True)
class Configuration:
    """All parameters of an installation run."""

    disks: tuple[str, ...]
    encrypt_rpool: bool
    passphrase: str | None
    swap_size: int
    free_tail_space: int
    bpool_name: str = DEFAULT_BPOOL_NAME
    rpool_name: str = DEFAULT_RPOOL_NAME
    bpool_tweaks: tuple[PoolOption, ...] = parse_pool_options(DEFAULT_BPOOL_TWEAKS)
    rpool_tweaks: tuple[PoolOption, ...] = parse_pool_options(DEFAULT_RPOOL_TWEAKS)
    os_installation_script: Path | None = None
    no_info_messages: bool = False
    skip_live_zfs_module_install: bool = False

    def __post_init__(self) -> None:
        """Check the invariants of the configuration."""
        if not self.disks:
            raise ValidationFailure("at least one disk must be selected")
        if not all(self.disks):
            raise ValidationFailure("disk ids must not be empty")
        if self.encrypt_rpool != (self.passphrase is not None):
            raise ValidationFailure(
                "a passphrase is required if and only if encryption is on"
            )
        if self.passphrase is not None and not is_valid_passphrase(self.passphrase):
            raise ValidationFailure(
                f"passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters"
            )
        for what, size in (
            ("swap size", self.swap_size),
            ("free tail space", self.free_tail_space),
        ):
            if size < 0:
                raise ValidationFailure(f"{what} must not be negative")
        for what, name in (
            ("boot pool", self.bpool_name),
            ("root pool", self.rpool_name),
        ):
            if not is_valid_pool_name(name):
                raise ValidationFailure(f"invalid {what} name {name!r}")
        if self.bpool_name == self.rpool_name:
            raise ValidationFailure("boot and root pool names must differ")

    def audit(self) -> list[tuple[str, object]]:
        """Return the resolved values fit for logging; never the passphrase."""
        return [
            ("selected_disks", list(self.disks)),
            ("encrypt_rpool", int(self.encrypt_rpool)),
            ("swap_size", self.swap_size),
            ("free_tail_space", self.free_tail_space),
            ("bpool_name", self.bpool_name),
            ("rpool_name", self.rpool_name),
            ("bpool_tweaks", format_pool_options(self.bpool_tweaks)),
            ("rpool_tweaks", format_pool_options(self.rpool_tweaks)),
            ("os_installation_script", self.os_installation_script or ""),
        ]


PROMPTED_VARIABLES = [
    ENV_SELECTED_DISKS,
    ENV_ENCRYPT_RPOOL,
    ENV_SWAP_SIZE,
    ENV_FREE_TAIL_SPACE,
    ENV_BPOOL_NAME,
    ENV_RPOOL_NAME,
    ENV_BPOOL_TWEAKS,
    ENV_RPOOL_TWEAKS,
]


def needs_dialogs(environ: Mapping[str, str]) -> bool:
    """Whether a run with this environment will show any dialog."""

    def unset(name: str) -> bool:
        return environ.get(name, "") == ""

    if unset(ENV_NO_INFO_MESSAGES):
        return True
    if any(unset(name) for name in PROMPTED_VARIABLES):
        return True
    return environ[ENV_ENCRYPT_RPOOL] != "0" and unset(ENV_PASSPHRASE)


class ConfigResolver:
    """Resolves every run parameter from the environment or from dialogs.

    A parameter whose environment variable is set and not empty is taken
    from the environment.  It is validated, but never asked again: an
    invalid value raises ValidationFailure.  Otherwise the operator is
    asked until the answer is valid.
    """

    def __init__(self, environ: Mapping[str, str], dialogs: Dialogs) -> None:
        """Initialize the resolver."""
        self.environ = environ
        self.dialogs = dialogs

    def _env(self, name: str) -> str | None:
        value = self.environ.get(name, "")
        return value if value != "" else None

    def _ask_until_valid(
        self,
        question: str,
        init: str,
        invalid_message: str,
        convert: Callable[[str], object],
    ) -> object:
        prefix = ""
        while True:
            answer = self.dialogs.inputbox(prefix + question, init)
            try:
                return convert(answer)
            except ValidationFailure as e:
                _LOGGER.debug("Rejected answer: %s", e)
                prefix = invalid_message + " "

    def resolve_os_installation_script(self) -> Path | None:
        """Path of the custom installation script, if any."""
        value = self._env(ENV_OS_INSTALLATION_SCRIPT)
        return Path(value) if value else None

    def resolve_disks(
        self,
        system_disks: Sequence[DiskDescriptor],
        mounted_devices: set[str],
    ) -> tuple[str, ...]:
        """Disks to create the pools on, in selection order."""
        requested = self._env(ENV_SELECTED_DISKS)
        return tuple(
            select_disks(requested, system_disks, mounted_devices, self.dialogs)
        )

    def resolve_encryption(self) -> tuple[bool, str | None]:
        """Whether to encrypt the root pool, and with which passphrase."""
        value = self._env(ENV_ENCRYPT_RPOOL)
        if value is None:
            encrypt = self.dialogs.yesno("Do you want to encrypt the root pool?")
        else:
            encrypt = value != "0"
        if not encrypt:
            return False, None

        passphrase = self._env(ENV_PASSPHRASE)
        if passphrase is not None:
            if not is_valid_passphrase(passphrase):
                raise ValidationFailure(
                    f"{ENV_PASSPHRASE} must be at least"
                    f" {MIN_PASSPHRASE_LENGTH} characters long"
                )
            return True, passphrase

        prefix = ""
        while True:
            passphrase = self.dialogs.passwordbox(
                f"{prefix}Please enter the passphrase"
                f" ({MIN_PASSPHRASE_LENGTH} chars min.):"
            )
            repeated = self.dialogs.passwordbox("Please repeat the passphrase:")
            if is_valid_passphrase(passphrase, repeated):
                return True, passphrase
            prefix = "Passphrase too short, or not matching! "

    def _resolve_size(
        self, envname: str, question: str, init: str, invalid_message: str
    ) -> int:
        def convert(value: str) -> int:
            if not is_valid_size(value):
                raise ValidationFailure(f"{envname}: invalid size {value!r}")
            return int(value)

        value = self._env(envname)
        if value is not None:
            return convert(value)
        return int(
            self._ask_until_valid(question, init, invalid_message, convert)  # type: ignore
        )

    def resolve_swap_size(self) -> int:
        """Size of the swap volume in GiB, 0 for none."""
        return self._resolve_size(
            ENV_SWAP_SIZE,
            "Enter the swap size in GiB (0 for no swap):",
            DEFAULT_SWAP_SIZE,
            "Invalid swap size!",
        )

    def resolve_free_tail_space(self) -> int:
        """Space to leave unpartitioned at the end of each disk, in GiB."""
        return self._resolve_size(
            ENV_FREE_TAIL_SPACE,
            "Enter the space to leave at the end of each disk (0 for none):",
            DEFAULT_FREE_TAIL_SPACE,
            "Invalid size!",
        )

    def _resolve_pool_name(self, envname: str, role: str, init: str) -> str:
        def convert(value: str) -> str:
            if not is_valid_pool_name(value):
                raise ValidationFailure(f"{envname}: invalid pool name {value!r}")
            return value

        value = self._env(envname)
        if value is not None:
            return convert(value)
        return str(
            self._ask_until_valid(
                f"Insert the name for the {role} pool",
                init,
                "Invalid pool name!",
                convert,
            )
        )

    def resolve_pool_names(self) -> tuple[str, str]:
        """Names of the boot pool and of the root pool."""
        return (
            self._resolve_pool_name(ENV_BPOOL_NAME, "boot", DEFAULT_BPOOL_NAME),
            self._resolve_pool_name(ENV_RPOOL_NAME, "root", DEFAULT_RPOOL_NAME),
        )

    def _resolve_tweaks(
        self, envname: str, role: str, init: str
    ) -> tuple[PoolOption, ...]:
        value = self._env(envname)
        if value is not None:
            return parse_pool_options(value)
        return tuple(
            self._ask_until_valid(  # type: ignore
                f"Insert the tweaks for the {role} pool",
                init,
                "Invalid tweaks!",
                parse_pool_options,
            )
        )

    def resolve_pool_tweaks(
        self,
    ) -> tuple[tuple[PoolOption, ...], tuple[PoolOption, ...]]:
        """Creation options of the boot pool and of the root pool."""
        return (
            self._resolve_tweaks(ENV_BPOOL_TWEAKS, "boot", DEFAULT_BPOOL_TWEAKS),
            self._resolve_tweaks(ENV_RPOOL_TWEAKS, "root", DEFAULT_RPOOL_TWEAKS),
        )

    def resolve(
        self,
        system_disks: Sequence[DiskDescriptor],
        mounted_devices: set[str],
    ) -> Configuration:
        """Resolve all parameters, in the order the operator is asked them."""
        script = self.resolve_os_installation_script()
        disks = self.resolve_disks(system_disks, mounted_devices)
        encrypt, passphrase = self.resolve_encryption()
        swap_size = self.resolve_swap_size()
        free_tail_space = self.resolve_free_tail_space()
        bpool_name, rpool_name = self.resolve_pool_names()
        bpool_tweaks, rpool_tweaks = self.resolve_pool_tweaks()
        config = Configuration(
            disks=disks,
            encrypt_rpool=encrypt,
            passphrase=passphrase,
            swap_size=swap_size,
            free_tail_space=free_tail_space,
            bpool_name=bpool_name,
            rpool_name=rpool_name,
            bpool_tweaks=bpool_tweaks,
            rpool_tweaks=rpool_tweaks,
            os_installation_script=script,
            no_info_messages=self._env(ENV_NO_INFO_MESSAGES) is not None,
            skip_live_zfs_module_install=(
                self._env(ENV_SKIP_LIVE_ZFS_MODULE_INSTALL) is not None
            ),
        )
        log_variables(config.audit())
        return config

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Optional
from pyinfra import host
from pyinfra.facts.server import LinuxDistribution

from redisops.exceptions import UnsupportedOSError

logger = logging.getLogger(__name__)


class OSFamily(Enum):
    DEBIAN = 'debian'
    REDHAT = 'redhat'
    AMAZON = 'amazon'
    GENTOO = 'gentoo'


class InitScript(Enum):
    DEBIAN = 'debian'
    REDHAT = 'redhat'
    GENTOO = 'gentoo'


class ServiceManager(Enum):
    SYSTEMD = 'systemd'
    SYSVINIT = 'sysvinit'
    OPENRC = 'openrc'


@dataclass(frozen=True)
class OSProfile:
    """
    How Sentinel services are supervised on one OS family.

    Arguments:
        family: Detected OS family.
        major_version: Major release, if known.
        init_script: Legacy init script template. None when systemd is used.
        service_manager: Tool that starts, stops and enables the service.
    """
    family: OSFamily
    major_version: Optional[int]
    init_script: Optional[InitScript]
    service_manager: ServiceManager

    @property
    def uses_systemd(self) -> bool:
        return self.service_manager == ServiceManager.SYSTEMD


# Init script and service manager when no systemd unit is installed. Every OSFamily must be here.
_LEGACY_PROFILES = {
    OSFamily.DEBIAN: (InitScript.DEBIAN, ServiceManager.SYSVINIT),
    OSFamily.REDHAT: (InitScript.REDHAT, ServiceManager.SYSVINIT),
    OSFamily.AMAZON: (InitScript.REDHAT, ServiceManager.SYSVINIT),
    OSFamily.GENTOO: (InitScript.GENTOO, ServiceManager.OPENRC),
}

# os-release IDs, checked in order
_FAMILY_IDS = [
    (OSFamily.AMAZON, ('amzn', 'amazon')),
    (OSFamily.DEBIAN, ('debian', 'ubuntu', 'raspbian', 'linuxmint')),
    (OSFamily.REDHAT, ('rhel', 'centos', 'fedora', 'rocky', 'almalinux', 'ol', 'scientific', 'redhat')),
    (OSFamily.GENTOO, ('gentoo',)),
]

# Distribution names, when os-release is not available
_FAMILY_NAMES = [
    (OSFamily.AMAZON, ('amazon',)),
    (OSFamily.DEBIAN, ('debian', 'ubuntu', 'raspbian')),
    (OSFamily.REDHAT, ('red hat', 'centos', 'fedora', 'rocky', 'alma', 'oracle', 'scientific')),
    (OSFamily.GENTOO, ('gentoo',)),
]


def resolve_profile(family: OSFamily, major_version: Optional[int] = None) -> OSProfile:
    """
    Looks up how the Sentinel service is defined on given OS family.
    RedHat-like systems from release 7 onwards use systemd units; Amazon Linux
    always uses the legacy init script, whatever its version.

    Raises:
        UnsupportedOSError: family has no known service definition.
    """
    if not isinstance(family, OSFamily) or family not in _LEGACY_PROFILES:
        raise UnsupportedOSError(f'no Sentinel service definition for OS family {family!r}')

    if family == OSFamily.REDHAT and major_version is not None and major_version >= 7:
        return OSProfile(family=family, major_version=major_version,
                         init_script=None, service_manager=ServiceManager.SYSTEMD)

    init_script, manager = _LEGACY_PROFILES[family]
    return OSProfile(family=family, major_version=major_version,
                     init_script=init_script, service_manager=manager)


def detect_family(distribution: dict) -> OSFamily:
    """
    Classifies output of pyinfra's LinuxDistribution fact.

    Raises:
        UnsupportedOSError: the distribution is unknown or missing.
    """
    if not distribution:
        raise UnsupportedOSError('target host is not a recognized Linux distribution')

    meta = distribution.get('release_meta') or {}
    ids = [meta.get('ID', '').lower()] + meta.get('ID_LIKE', '').lower().split()
    name = (distribution.get('name') or '').lower()

    # Exact os-release IDs first; ID_LIKE of Amazon Linux claims to be RedHat
    for family, known in _FAMILY_IDS:
        if ids[0] in known:
            return family
    for family, known in _FAMILY_IDS:
        if any(i in known for i in ids[1:]):
            return family
    for family, known in _FAMILY_NAMES:
        if any(k in name for k in known):
            return family

    raise UnsupportedOSError(f'unsupported OS: {distribution.get("name")!r}')


def host_profile() -> OSProfile:
    """
    Resolves the profile of the host pyinfra is currently operating on.
    """
    distribution = host.get_fact(LinuxDistribution)
    family = detect_family(distribution)
    major = distribution.get('major')
    profile = resolve_profile(family, int(major) if major is not None else None)
    logger.debug('%s: %s %s uses %s', host.name, family.value, major, profile.service_manager.value)
    return profile

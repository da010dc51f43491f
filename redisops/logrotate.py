from dataclasses import dataclass, field
from io import StringIO
import logging
from typing import Optional
from pyinfra import host
from pyinfra.api import operation
from pyinfra.operations import files, server

from redisops.convergence import Run
from redisops.exceptions import ConfigError

logger = logging.getLogger(__name__)

FREQUENCIES = ('daily', 'weekly', 'monthly', 'yearly')


@dataclass
class Policy:
    """
    Log rotation policy.

    Arguments:
        frequency: How often logs are rotated: daily, weekly, monthly or yearly.
        rotate: Number of rotated logs to keep.
        compress: Whether to gzip rotated logs.
        max_size: Rotate earlier if the log grows beyond this, e.g. '100M'.
    """
    frequency: str = field(default='weekly')
    rotate: int = field(default=12)
    compress: bool = field(default=True)
    max_size: Optional[str] = field(default=None)

    def __post_init__(self):
        if self.frequency not in FREQUENCIES:
            raise ConfigError(f'unknown logrotate frequency {self.frequency!r}')
        if self.rotate < 0:
            raise ConfigError('logrotate rotate count cannot be negative')


def path(name: str) -> str:
    return f'/etc/logrotate.d/{name}'


def render(log_path: str, policy: Policy, user: str, group: str) -> str:
    # Sentinel keeps its log file open, so copy and truncate instead of moving
    lines = [
        policy.frequency,
        f'rotate {policy.rotate}',
        *([f'maxsize {policy.max_size}'] if policy.max_size else []),
        *(['compress', 'delaycompress'] if policy.compress else []),
        'missingok',
        'notifempty',
        'copytruncate',
        f'su {user} {group}',
    ]
    body = '\n'.join(f'    {line}' for line in lines)
    return f"""# Managed by redisops
{log_path} {{
{body}
}}
"""


def needs_package(run: Optional[Run], host_key: str) -> bool:
    """
    Whether the logrotate package should be declared for host_key. Without a
    shared run, every caller declares it.
    """
    if run is None:
        return True
    return run.claim(host_key, 'package', 'logrotate')


@operation()
def config(name: str, data: str, install_package: bool = True, present: bool = True):
    """
    Installs a logrotate policy file, along with logrotate itself.

    Arguments:
        name: Name of the file under /etc/logrotate.d.
        data: Policy file contents, see render().
        install_package: Whether to declare the logrotate package. Pass
            needs_package(run, host.name) to declare it once per host.
        present: Set to False to remove the policy. The package is never removed.
    """
    if not present:
        yield from files.file._inner(path=path(name), present=False)
        return

    if install_package:
        yield from server.packages._inner(packages=['logrotate'], present=True)
    else:
        logger.debug('%s: logrotate package already declared in this run', host.name)
    yield from files.put._inner(src=StringIO(data), dest=path(name), user='root', group='root', mode='644')

from dataclasses import dataclass, field
from io import StringIO
import logging
import re
from typing import Optional
from pyinfra import host
from pyinfra.api import operation
from pyinfra.operations import files, openrc, server, systemd, sysvinit
from pyinfra.facts.files import File, Sha1File

from redisops import initscripts, logrotate
from redisops.convergence import Run
from redisops.exceptions import ConfigError
from redisops.osfamily import OSProfile, ServiceManager, host_profile

logger = logging.getLogger(__name__)

SENTINEL_PORT = 26379
SYSTEMD_UNIT_DIR = '/usr/lib/systemd/system'
INIT_SCRIPT_DIR = '/etc/init.d'

PROTECTED_MODES = ('yes', 'no')
LOG_LEVELS = ('debug', 'verbose', 'notice', 'warning')

_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_.-]+$')


def _check_port(what: str, port: int):
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f'{what} must be a port number, got {port!r}')


def _check_absolute(what: str, path: str):
    if not path or not path.startswith('/'):
        raise ConfigError(f'{what} must be an absolute path, got {path!r}')


@dataclass
class MonitorConfig:
    """
    One master watched by Sentinel.

    Arguments:
        master_host: Hostname or IP of the current master.
        master_port: Redis port of the master.
        quorum: Number of Sentinels that need to agree the master is down
            before failover is started.
        down_after_ms: Time the master can be unreachable before it is
            considered down, in milliseconds.
        parallel_syncs: How many replicas are reconfigured to the new master
            at the same time after failover.
        failover_timeout_ms: Failover timeout in milliseconds.
        auth_pass: Password to authenticate with the master and replicas.
        auth_user: ACL user to authenticate with, together with auth_pass.
        notification_script: Script called for warning level events.
        client_reconfig_script: Script called when the master changes.
        extra: Further per-group directives, e.g. {'master-reboot-down-after-period': '0'}.
            They are written as `sentinel <directive> <group> <value>`.
    """
    master_host: str
    master_port: int = field(default=6379)
    quorum: int = field(default=2)
    down_after_ms: int = field(default=30_000)
    parallel_syncs: int = field(default=1)
    failover_timeout_ms: int = field(default=180_000)

    auth_pass: Optional[str] = field(default=None, repr=False)
    auth_user: Optional[str] = field(default=None)
    notification_script: Optional[str] = field(default=None)
    client_reconfig_script: Optional[str] = field(default=None)

    extra: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.master_host:
            raise ConfigError('monitor needs a master host')
        _check_port('master port', self.master_port)
        if self.quorum < 1:
            raise ConfigError(f'quorum must be at least 1, got {self.quorum}')
        if self.parallel_syncs < 1:
            raise ConfigError(f'parallel_syncs must be at least 1, got {self.parallel_syncs}')
        if self.down_after_ms <= 0 or self.failover_timeout_ms <= 0:
            raise ConfigError('monitor timeouts must be positive')
        if self.notification_script is not None:
            _check_absolute('notification script', self.notification_script)
        if self.client_reconfig_script is not None:
            _check_absolute('client reconfig script', self.client_reconfig_script)


def _default_monitors() -> dict[str, MonitorConfig]:
    return {'mymaster': MonitorConfig(master_host='127.0.0.1')}


@dataclass
class SentinelConfig:
    """
    Redis Sentinel instance configuration.

    Arguments:
        name: Unique name of this Sentinel on the host. Config file, service
            and log names are derived from it.
        bind: IP address to listen on. By default, all interfaces.
        port: Sentinel port.
        log_dir: Directory of the log file.
        pid_dir: Directory of the pid file.
        run_dir: Working directory. Sentinel rewrites its config there, so
            the managed config file in /etc is copied to it when changed.
        log_level: Sentinel log level.
        protected_mode: 'yes', 'no' or None to leave Sentinel's default.
        requirepass: Password clients need to talk to this Sentinel.
        sentinel_user: ACL user this Sentinel authenticates to other Sentinels with.
        sentinel_pass: Password for sentinel_user.
        acl_users: ACL rules, each written as a `user` directive,
            e.g. 'admin on >secret ~* &* +@all'.
        monitors: Masters to monitor, by group name.
        running: Whether the service should be running.
        enabled: Whether the service should start on boot.
        manage_logrotate: Whether to install a logrotate policy for the log file.
        logrotate_policy: Log rotation policy.
        announce_ip: IP address announced to other Sentinels, if different
            from the one they see. Necessary behind NAT.
        announce_port: Port announced to other Sentinels.
        resolve_hostnames: Allow hostnames instead of IPs in monitors.
        announce_hostnames: Announce hostnames instead of IPs.
        sentinel_id: Fixed Sentinel ID, exactly 40 characters. By default,
            Sentinel generates one on first start.
        custom_config: Custom config to append to the config file.
    """
    name: str

    bind: Optional[str] = field(default=None)
    port: int = field(default=SENTINEL_PORT)

    log_dir: str = field(default='/var/log/redis')
    pid_dir: str = field(default='/var/run/redis')
    run_dir: str = field(default='/var/lib/redis')
    log_level: str = field(default='notice')

    protected_mode: Optional[str] = field(default=None)
    requirepass: Optional[str] = field(default=None, repr=False)
    sentinel_user: Optional[str] = field(default=None)
    sentinel_pass: Optional[str] = field(default=None, repr=False)
    acl_users: list[str] = field(default_factory=list, repr=False)

    monitors: dict[str, MonitorConfig] = field(default_factory=_default_monitors)

    running: bool = field(default=True)
    enabled: bool = field(default=True)
    manage_logrotate: bool = field(default=True)
    logrotate_policy: logrotate.Policy = field(default_factory=logrotate.Policy)

    announce_ip: Optional[str] = field(default=None)
    announce_port: Optional[int] = field(default=None)
    resolve_hostnames: bool = field(default=False)
    announce_hostnames: bool = field(default=False)
    sentinel_id: Optional[str] = field(default=None)

    custom_config: str = field(default='')

    def __post_init__(self):
        if not self.name or not _NAME_PATTERN.match(self.name):
            raise ConfigError(f'invalid Sentinel name {self.name!r}')
        _check_port('port', self.port)
        if self.announce_port is not None:
            _check_port('announce port', self.announce_port)
        _check_absolute('log_dir', self.log_dir)
        _check_absolute('pid_dir', self.pid_dir)
        _check_absolute('run_dir', self.run_dir)
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f'log_level must be one of {LOG_LEVELS}, got {self.log_level!r}')
        if self.protected_mode is not None and self.protected_mode not in PROTECTED_MODES:
            raise ConfigError(f'protected_mode must be yes, no or None, got {self.protected_mode!r}')
        if self.sentinel_id is not None and len(self.sentinel_id) != 40:
            raise ConfigError(f'sentinel_id must be exactly 40 characters, got {len(self.sentinel_id)}')
        if not self.monitors:
            raise ConfigError('Sentinel needs at least one monitor')
        for rule in self.acl_users:
            if not rule or not rule.strip():
                raise ConfigError('ACL user rules cannot be blank')
        for group in self.monitors:
            if not group or re.search(r'\s', group):
                raise ConfigError(f'invalid monitor group name {group!r}')

    @property
    def service_name(self) -> str:
        return f'redis-sentinel_{self.name}'

    @property
    def config_path(self) -> str:
        return f'/etc/{self.service_name}.conf'

    @property
    def runtime_config_path(self) -> str:
        return f'{self.run_dir}/{self.service_name}.conf'

    @property
    def log_path(self) -> str:
        return f'{self.log_dir}/{self.service_name}.log'

    @property
    def pid_path(self) -> str:
        return f'{self.pid_dir}/{self.service_name}.pid'


@dataclass
class Installation:
    """
    Where and as whom Redis is installed. This module does not install
    Redis; describe an existing installation here.

    Arguments:
        user: User Sentinel runs as.
        group: Group Sentinel runs as.
        install_dir: Directory containing the redis-sentinel binary.
    """
    user: str = field(default='redis')
    group: str = field(default='redis')
    install_dir: str = field(default='/usr/bin')

    def __post_init__(self):
        _check_absolute('install_dir', self.install_dir)

    @property
    def binary(self) -> str:
        return f'{self.install_dir.rstrip("/")}/redis-sentinel'

    @classmethod
    def from_host(cls) -> 'Installation':
        """
        Reads installation from inventory data of the current host:
        redis_user, redis_group and redis_install_dir.
        """
        defaults = cls()
        return cls(
            user=host.data.get('redis_user', defaults.user),
            group=host.data.get('redis_group', defaults.group),
            install_dir=host.data.get('redis_install_dir', defaults.install_dir),
        )


@dataclass
class FileArtifact:
    path: str
    content: str
    mode: str = field(default='644')
    user: str = field(default='root')
    group: str = field(default='root')


@dataclass
class ServiceState:
    name: str
    manager: ServiceManager
    running: bool
    enabled: bool


@dataclass
class Declaration:
    """
    Desired state of one Sentinel instance, in the order it must be applied:
    config file, service definition, service, then logrotate package and file.

    Arguments:
        config_file: Managed Sentinel config.
        service_file: Systemd unit or init script.
        preset: Whether systemctl preset runs when the unit changes.
        service: Service state, restarted when the files above change.
        logrotate_file: Logrotate policy, if managed.
        packages: Packages to declare before the logrotate policy.
    """
    config_file: FileArtifact
    service_file: FileArtifact
    preset: bool
    service: ServiceState
    logrotate_file: Optional[FileArtifact] = field(default=None)
    packages: list[str] = field(default_factory=list)


def _quote(value) -> str:
    value = str(value)
    if value == '' or re.search(r'[\s"\'\\]', value):
        escaped = value.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return value


def config_directives(config: SentinelConfig, daemonize: bool) -> list[tuple]:
    """
    Builds the directives of Sentinel's config file, in file order.
    Each directive is a tuple of its name and arguments.
    """
    directives = [('port', config.port)]
    if config.bind:
        directives.append(('bind', config.bind))
    if config.protected_mode:
        directives.append(('protected-mode', config.protected_mode))
    directives += [
        ('daemonize', 'yes' if daemonize else 'no'),
        ('pidfile', config.pid_path),
        ('logfile', config.log_path),
        ('loglevel', config.log_level),
        ('dir', config.run_dir),
    ]

    if config.requirepass:
        directives.append(('requirepass', config.requirepass))
    for rule in config.acl_users:
        directives.append(('user', *rule.split()))
    if config.sentinel_user:
        directives.append(('sentinel', 'sentinel-user', config.sentinel_user))
    if config.sentinel_pass:
        directives.append(('sentinel', 'sentinel-pass', config.sentinel_pass))

    if config.sentinel_id:
        directives.append(('sentinel', 'myid', config.sentinel_id))
    if config.announce_ip:
        directives.append(('sentinel', 'announce-ip', config.announce_ip))
    if config.announce_port:
        directives.append(('sentinel', 'announce-port', config.announce_port))
    if config.resolve_hostnames:
        directives.append(('sentinel', 'resolve-hostnames', 'yes'))
    if config.announce_hostnames:
        directives.append(('sentinel', 'announce-hostnames', 'yes'))

    for group, monitor in config.monitors.items():
        directives += [
            ('sentinel', 'monitor', group, monitor.master_host, monitor.master_port, monitor.quorum),
            ('sentinel', 'down-after-milliseconds', group, monitor.down_after_ms),
            ('sentinel', 'parallel-syncs', group, monitor.parallel_syncs),
            ('sentinel', 'failover-timeout', group, monitor.failover_timeout_ms),
        ]
        optional = [
            ('auth-pass', monitor.auth_pass),
            ('auth-user', monitor.auth_user),
            ('notification-script', monitor.notification_script),
            ('client-reconfig-script', monitor.client_reconfig_script),
            *monitor.extra.items(),
        ]
        for directive, value in optional:
            if value is not None and value != '':
                directives.append(('sentinel', directive, group, value))
    return directives


def render_config(config: SentinelConfig, daemonize: bool = False) -> str:
    """
    Renders Sentinel's config file. Same config always renders to same text.

    Arguments:
        config: Sentinel configuration.
        daemonize: Whether Sentinel forks to background. Legacy init scripts
            need this; systemd supervises Sentinel in foreground.
    """
    lines = ['# Managed by redisops. Local changes will be overwritten.']
    for name, *args in config_directives(config, daemonize):
        lines.append(' '.join([name, *[_quote(arg) for arg in args]]))
    text = '\n'.join(lines) + '\n'
    if config.custom_config:
        text += config.custom_config.rstrip('\n') + '\n'
    return text


def service_definition(config: SentinelConfig, install: Installation, profile: OSProfile) -> tuple[FileArtifact, bool]:
    """
    Picks and renders the service definition of a Sentinel.
    RedHat 7 and later get a systemd unit, which is also preset after
    changes. Everything else gets an init script for the OS family.

    Returns:
        Service definition file and whether it needs systemctl preset.
    """
    svc = initscripts.Service(
        name=config.service_name,
        binary=install.binary,
        config_path=config.runtime_config_path,
        pid_path=config.pid_path,
        pid_dir=config.pid_dir,
        user=install.user,
        group=install.group,
    )
    if profile.uses_systemd:
        unit = FileArtifact(
            path=f'{SYSTEMD_UNIT_DIR}/{config.service_name}.service',
            content=initscripts.systemd_unit(svc),
        )
        return unit, True

    script = FileArtifact(
        path=f'{INIT_SCRIPT_DIR}/{config.service_name}',
        content=initscripts.render(profile.init_script, svc),
        mode='755',
    )
    return script, False


def declare(config: SentinelConfig, install: Installation, profile: OSProfile,
            run: Run = None, host_key: str = '', present: bool = True) -> Declaration:
    """
    Builds the complete desired state of a Sentinel instance without
    touching the host. Everything that can fail does so here.

    Arguments:
        config: Sentinel configuration.
        install: Redis installation.
        profile: OS profile of the target host.
        run: Shared run state, used to declare the logrotate package once per host.
        host_key: Host the declaration is for, typically host.name.
        present: Whether the instance is being created. Removals never claim
            shared packages.
    """
    config_file = FileArtifact(
        path=config.config_path,
        content=render_config(config, daemonize=not profile.uses_systemd),
        mode='640',
        user=install.user,
        group=install.group,
    )
    service_file, preset = service_definition(config, install, profile)
    service = ServiceState(
        name=config.service_name,
        manager=profile.service_manager,
        running=config.running,
        enabled=config.enabled,
    )

    logrotate_file = None
    packages = []
    if config.manage_logrotate:
        logrotate_file = FileArtifact(
            path=logrotate.path(config.service_name),
            content=logrotate.render(config.log_path, config.logrotate_policy, install.user, install.group),
        )
        if present and logrotate.needs_package(run, host_key):
            packages.append('logrotate')

    return Declaration(
        config_file=config_file,
        service_file=service_file,
        preset=preset,
        service=service,
        logrotate_file=logrotate_file,
        packages=packages,
    )


def _changed(path: str, data: str) -> bool:
    local_hash = files.get_file_sha1(StringIO(data))
    return local_hash != host.get_fact(Sha1File, path=path)


def _put(artifact: FileArtifact):
    yield from files.put._inner(
        src=StringIO(artifact.content),
        dest=artifact.path,
        user=artifact.user,
        group=artifact.group,
        mode=artifact.mode,
    )


def _service(state: ServiceState, restarted: bool = False, daemon_reload: bool = False):
    if state.manager == ServiceManager.SYSTEMD:
        yield from systemd.service._inner(
            service=f'{state.name}.service',
            running=state.running,
            enabled=state.enabled,
            restarted=restarted,
            daemon_reload=daemon_reload,
        )
    elif state.manager == ServiceManager.OPENRC:
        yield from openrc.service._inner(
            service=state.name,
            running=state.running,
            enabled=state.enabled,
            restarted=restarted,
        )
    else:
        yield from sysvinit.service._inner(
            service=state.name,
            running=state.running,
            enabled=state.enabled,
            restarted=restarted,
        )


@operation()
def instance(config: SentinelConfig, install: Installation = None,
             run: Run = None, present: bool = True):
    """
    Installs a Redis Sentinel instance as a system service. Redis itself must
    already be installed.

    The config file is rendered to /etc/redis-sentinel_<name>.conf. Because
    Sentinel rewrites its config at runtime, it actually runs with a copy in
    run_dir. The copy is replaced and Sentinel restarted only when the
    rendered config changes; state Sentinel has learned is lost then.

    On RedHat 7 and later, a systemd unit is installed. Other supported
    systems (Debian, Ubuntu, older RedHat, Amazon Linux, Gentoo) get an
    init script instead.

    Arguments:
        config: Sentinel configuration.
        install: Redis installation. Defaults to Installation.from_host().
        run: Shared run state. Pass the same Run to all instances in a deploy
            to declare shared packages only once per host.
        present: By default, the Sentinel is created or modified. If set to
            False, it is stopped and its files are removed instead. Log files
            are NOT deleted.
    """
    if install is None:
        install = Installation.from_host()
    profile = host_profile()
    declaration = declare(config, install, profile, run=run, host_key=host.name, present=present)
    logger.info('%s: declaring Sentinel %s (%s)', host.name, config.name, profile.service_manager.value)

    if not present:
        yield from _remove(config, declaration)
        return

    for path in (config.log_dir, config.pid_dir, config.run_dir):
        yield from files.directory._inner(path=path, user=install.user, group=install.group)

    config_file = declaration.config_file
    config_changed = _changed(config_file.path, config_file.content)
    yield from _put(config_file)
    if config_changed or host.get_fact(File, path=config.runtime_config_path) is None:
        runtime = FileArtifact(
            path=config.runtime_config_path,
            content=config_file.content,
            mode='640',
            user=install.user,
            group=install.group,
        )
        yield from _put(runtime)

    service_file = declaration.service_file
    definition_changed = _changed(service_file.path, service_file.content)
    yield from _put(service_file)
    if definition_changed and declaration.preset:
        yield from systemd.daemon_reload._inner()
        yield from server.shell._inner(f'systemctl preset {config.service_name}.service')

    yield from _service(
        declaration.service,
        restarted=declaration.service.running and (config_changed or definition_changed),
    )

    if declaration.logrotate_file is not None:
        yield from logrotate.config._inner(
            name=config.service_name,
            data=declaration.logrotate_file.content,
            install_package='logrotate' in declaration.packages,
        )


def _remove(config: SentinelConfig, declaration: Declaration):
    stopped = ServiceState(
        name=declaration.service.name,
        manager=declaration.service.manager,
        running=False,
        enabled=False,
    )
    yield from _service(stopped)
    yield from files.file._inner(path=declaration.service_file.path, present=False)
    if declaration.preset:
        yield from systemd.daemon_reload._inner()
    yield from files.file._inner(path=config.config_path, present=False)
    yield from files.file._inner(path=config.runtime_config_path, present=False)
    if declaration.logrotate_file is not None:
        yield from logrotate.config._inner(name=config.service_name, data='', present=False)

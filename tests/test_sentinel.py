import pytest

from redisops import logrotate
from redisops.convergence import Run
from redisops.exceptions import ConfigError, UnsupportedOSError
from redisops.osfamily import OSFamily, OSProfile, ServiceManager, resolve_profile
from redisops.sentinel import (
    Installation,
    MonitorConfig,
    SentinelConfig,
    config_directives,
    declare,
    render_config,
    service_definition,
)

INSTALL = Installation()
SENTINEL_ID = 'a' * 40


def _mymaster():
    return SentinelConfig(
        name='mymaster',
        port=26379,
        monitors={'mymaster': MonitorConfig(
            master_host='127.0.0.1',
            master_port=6379,
            quorum=2,
            down_after_ms=30000,
            parallel_syncs=1,
            failover_timeout_ms=180000,
        )},
    )


def test_monitor_lines():
    lines = render_config(_mymaster()).splitlines()
    assert 'sentinel monitor mymaster 127.0.0.1 6379 2' in lines
    assert 'sentinel down-after-milliseconds mymaster 30000' in lines
    assert 'sentinel failover-timeout mymaster 180000' in lines
    assert 'sentinel parallel-syncs mymaster 1' in lines
    assert lines.index('sentinel monitor mymaster 127.0.0.1 6379 2') < lines.index('sentinel down-after-milliseconds mymaster 30000')


def test_render_is_deterministic():
    config = SentinelConfig(
        name='cache',
        bind='10.0.0.5',
        protected_mode='no',
        requirepass='secret',
        monitors={
            'one': MonitorConfig(master_host='10.0.0.1', auth_pass='pw'),
            'two': MonitorConfig(master_host='10.0.0.2', quorum=3),
        },
        announce_ip='192.0.2.1',
        sentinel_id=SENTINEL_ID,
    )
    assert render_config(config) == render_config(config)
    assert render_config(config, daemonize=True) == render_config(config, daemonize=True)


def test_base_directives():
    lines = render_config(_mymaster()).splitlines()
    assert lines[0].startswith('#')
    assert 'port 26379' in lines
    assert 'daemonize no' in lines
    assert 'pidfile /var/run/redis/redis-sentinel_mymaster.pid' in lines
    assert 'logfile /var/log/redis/redis-sentinel_mymaster.log' in lines
    assert 'loglevel notice' in lines
    assert 'dir /var/lib/redis' in lines


def test_optional_directives_omitted():
    text = render_config(_mymaster())
    for directive in ('bind', 'protected-mode', 'requirepass', 'user ', 'auth-pass', 'auth-user',
                      'notification-script', 'client-reconfig-script', 'announce-ip',
                      'announce-port', 'myid', 'sentinel-user', 'sentinel-pass',
                      'resolve-hostnames', 'announce-hostnames'):
        assert directive not in text
    # No directive without a value
    for line in text.splitlines():
        assert len(line.split()) >= 2


def test_optional_directives_rendered():
    config = SentinelConfig(
        name='full',
        bind='10.0.0.5',
        protected_mode='yes',
        requirepass='secret',
        sentinel_user='sentinel',
        sentinel_pass='peerpass',
        acl_users=['admin on >adminpass ~* &* +@all'],
        monitors={'cluster': MonitorConfig(
            master_host='redis-1.example.com',
            auth_pass='masterpass',
            auth_user='replicator',
            notification_script='/usr/local/bin/notify.sh',
            client_reconfig_script='/usr/local/bin/reconfig.sh',
            extra={'master-reboot-down-after-period': '0'},
        )},
        announce_ip='192.0.2.1',
        announce_port=26380,
        resolve_hostnames=True,
        announce_hostnames=True,
        sentinel_id=SENTINEL_ID,
    )
    lines = render_config(config, daemonize=True).splitlines()
    assert 'bind 10.0.0.5' in lines
    assert 'protected-mode yes' in lines
    assert 'daemonize yes' in lines
    assert 'requirepass secret' in lines
    assert 'user admin on >adminpass ~* &* +@all' in lines
    assert 'sentinel sentinel-user sentinel' in lines
    assert 'sentinel sentinel-pass peerpass' in lines
    assert f'sentinel myid {SENTINEL_ID}' in lines
    assert 'sentinel announce-ip 192.0.2.1' in lines
    assert 'sentinel announce-port 26380' in lines
    assert 'sentinel resolve-hostnames yes' in lines
    assert 'sentinel announce-hostnames yes' in lines
    assert 'sentinel monitor cluster redis-1.example.com 6379 2' in lines
    assert 'sentinel auth-pass cluster masterpass' in lines
    assert 'sentinel auth-user cluster replicator' in lines
    assert 'sentinel notification-script cluster /usr/local/bin/notify.sh' in lines
    assert 'sentinel client-reconfig-script cluster /usr/local/bin/reconfig.sh' in lines
    assert 'sentinel master-reboot-down-after-period cluster 0' in lines


def test_monitor_groups_keep_their_order():
    config = SentinelConfig(name='multi', monitors={
        'zeta': MonitorConfig(master_host='10.0.0.1'),
        'alpha': MonitorConfig(master_host='10.0.0.2'),
    })
    monitors = [d[2] for d in config_directives(config, False) if d[:2] == ('sentinel', 'monitor')]
    assert monitors == ['zeta', 'alpha']


def test_values_with_spaces_are_quoted():
    config = SentinelConfig(name='quoted', requirepass='two words', monitors={
        'g': MonitorConfig(master_host='10.0.0.1', auth_pass='say "hi"'),
    })
    lines = render_config(config).splitlines()
    assert 'requirepass "two words"' in lines
    assert 'sentinel auth-pass g "say \\"hi\\""' in lines


def test_custom_config_appended():
    config = SentinelConfig(name='custom', custom_config='sentinel deny-scripts-reconfig yes')
    assert render_config(config).endswith('sentinel deny-scripts-reconfig yes\n')


def test_default_monitor():
    config = SentinelConfig(name='defaults')
    assert 'sentinel monitor mymaster 127.0.0.1 6379 2' in render_config(config).splitlines()


def test_derived_paths():
    config = SentinelConfig(name='mymaster', run_dir='/srv/sentinel')
    assert config.service_name == 'redis-sentinel_mymaster'
    assert config.config_path == '/etc/redis-sentinel_mymaster.conf'
    assert config.runtime_config_path == '/srv/sentinel/redis-sentinel_mymaster.conf'


@pytest.mark.parametrize('sentinel_id', ['', 'a' * 39, 'a' * 41])
def test_sentinel_id_length(sentinel_id):
    with pytest.raises(ConfigError):
        SentinelConfig(name='x', sentinel_id=sentinel_id)


@pytest.mark.parametrize('kwargs', [
    {'name': ''},
    {'name': 'has space'},
    {'name': '../escape'},
    {'name': 'x', 'port': 0},
    {'name': 'x', 'port': 70000},
    {'name': 'x', 'port': True},
    {'name': 'x', 'acl_users': ['']},
    {'name': 'x', 'acl_users': ['admin on >pw ~* +@all', '   ']},
    {'name': 'x', 'announce_port': -1},
    {'name': 'x', 'log_dir': 'relative/logs'},
    {'name': 'x', 'pid_dir': ''},
    {'name': 'x', 'run_dir': 'run'},
    {'name': 'x', 'protected_mode': 'maybe'},
    {'name': 'x', 'protected_mode': True},
    {'name': 'x', 'log_level': 'trace'},
    {'name': 'x', 'monitors': {}},
    {'name': 'x', 'monitors': {'bad group': MonitorConfig(master_host='h')}},
])
def test_invalid_sentinel_config(kwargs):
    with pytest.raises(ConfigError):
        SentinelConfig(**kwargs)


@pytest.mark.parametrize('kwargs', [
    {'master_host': ''},
    {'master_host': 'h', 'master_port': 0},
    {'master_host': 'h', 'quorum': 0},
    {'master_host': 'h', 'parallel_syncs': 0},
    {'master_host': 'h', 'down_after_ms': 0},
    {'master_host': 'h', 'failover_timeout_ms': -1},
    {'master_host': 'h', 'notification_script': 'notify.sh'},
    {'master_host': 'h', 'client_reconfig_script': 'bin/reconfig.sh'},
])
def test_invalid_monitor(kwargs):
    with pytest.raises(ConfigError):
        MonitorConfig(**kwargs)


def test_invalid_installation():
    with pytest.raises(ConfigError):
        Installation(install_dir='usr/bin')


def test_installation_binary():
    assert Installation(install_dir='/opt/redis/bin/').binary == '/opt/redis/bin/redis-sentinel'


def test_systemd_unit_on_redhat_7():
    config = _mymaster()
    unit, preset = service_definition(config, INSTALL, resolve_profile(OSFamily.REDHAT, 7))
    assert preset
    assert unit.path == '/usr/lib/systemd/system/redis-sentinel_mymaster.service'
    assert 'ExecStart=/usr/bin/redis-sentinel /var/lib/redis/redis-sentinel_mymaster.conf' in unit.content
    assert 'User=redis' in unit.content


def test_init_script_on_redhat_6():
    script, preset = service_definition(_mymaster(), INSTALL, resolve_profile(OSFamily.REDHAT, 6))
    assert not preset
    assert script.path == '/etc/init.d/redis-sentinel_mymaster'
    assert script.mode == '755'
    assert '/etc/rc.d/init.d/functions' in script.content


def test_init_script_on_amazon():
    script, preset = service_definition(_mymaster(), INSTALL, resolve_profile(OSFamily.AMAZON, 2))
    assert not preset
    assert script.path == '/etc/init.d/redis-sentinel_mymaster'


def test_init_script_on_debian():
    script, _ = service_definition(_mymaster(), INSTALL, resolve_profile(OSFamily.DEBIAN, 12))
    assert 'start-stop-daemon' in script.content
    assert '--chuid redis:redis' in script.content


def test_missing_init_template_is_an_error():
    broken = OSProfile(family=OSFamily.DEBIAN, major_version=12,
                       init_script=None, service_manager=ServiceManager.SYSVINIT)
    with pytest.raises(UnsupportedOSError):
        service_definition(_mymaster(), INSTALL, broken)


def test_declare_systemd():
    install = Installation(user='cache', group='cache')
    declaration = declare(_mymaster(), install, resolve_profile(OSFamily.REDHAT, 8))
    assert declaration.config_file.path == '/etc/redis-sentinel_mymaster.conf'
    assert declaration.config_file.user == 'cache'
    assert declaration.config_file.mode == '640'
    assert 'daemonize no' in declaration.config_file.content
    assert declaration.preset
    assert declaration.service.manager == ServiceManager.SYSTEMD
    assert declaration.service.name == 'redis-sentinel_mymaster'
    assert declaration.service.running and declaration.service.enabled
    assert declaration.logrotate_file.path == '/etc/logrotate.d/redis-sentinel_mymaster'
    assert 'su cache cache' in declaration.logrotate_file.content
    assert declaration.packages == ['logrotate']


def test_declare_legacy_daemonizes():
    declaration = declare(_mymaster(), INSTALL, resolve_profile(OSFamily.GENTOO))
    assert 'daemonize yes' in declaration.config_file.content
    assert declaration.service.manager == ServiceManager.OPENRC
    assert declaration.service_file.content.startswith('#!/sbin/openrc-run')


def test_declare_is_idempotent():
    profile = resolve_profile(OSFamily.DEBIAN, 12)
    assert declare(_mymaster(), INSTALL, profile) == declare(_mymaster(), INSTALL, profile)


def test_declare_service_flags():
    config = SentinelConfig(name='off', running=False, enabled=False)
    service = declare(config, INSTALL, resolve_profile(OSFamily.DEBIAN, 12)).service
    assert not service.running
    assert not service.enabled


def test_declare_without_logrotate():
    config = SentinelConfig(name='nolog', manage_logrotate=False)
    declaration = declare(config, INSTALL, resolve_profile(OSFamily.DEBIAN, 12), run=Run(), host_key='h')
    assert declaration.logrotate_file is None
    assert declaration.packages == []
    assert declaration.service_file is not None


def test_logrotate_package_declared_once_per_run():
    run = Run()
    profile = resolve_profile(OSFamily.DEBIAN, 12)
    first = declare(SentinelConfig(name='one'), INSTALL, profile, run=run, host_key='host-1')
    second = declare(SentinelConfig(name='two'), INSTALL, profile, run=run, host_key='host-1')
    assert first.packages == ['logrotate']
    assert second.packages == []
    assert second.logrotate_file is not None

    other_host = declare(SentinelConfig(name='one'), INSTALL, profile, run=run, host_key='host-2')
    assert other_host.packages == ['logrotate']


def test_logrotate_policy_passed_through():
    config = SentinelConfig(name='rot', logrotate_policy=logrotate.Policy(frequency='daily', rotate=7))
    content = declare(config, INSTALL, resolve_profile(OSFamily.DEBIAN, 12)).logrotate_file.content
    assert '/var/log/redis/redis-sentinel_rot.log {' in content
    assert '    daily\n' in content
    assert '    rotate 7\n' in content


def test_config_file_with_secrets_is_not_world_readable():
    config = SentinelConfig(name='s', requirepass='topsecret')
    for profile in (resolve_profile(OSFamily.REDHAT, 9), resolve_profile(OSFamily.DEBIAN, 12)):
        assert declare(config, INSTALL, profile).config_file.mode == '640'


def test_master_port_cannot_be_bool():
    with pytest.raises(ConfigError):
        MonitorConfig(master_host='h', master_port=True)


def test_removal_does_not_claim_logrotate_package():
    run = Run()
    profile = resolve_profile(OSFamily.DEBIAN, 12)
    removed = declare(SentinelConfig(name='gone'), INSTALL, profile, run=run, host_key='h1', present=False)
    kept = declare(SentinelConfig(name='kept'), INSTALL, profile, run=run, host_key='h1')
    assert removed.packages == []
    assert kept.packages == ['logrotate']

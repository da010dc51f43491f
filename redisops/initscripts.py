from dataclasses import dataclass

from redisops.exceptions import UnsupportedOSError
from redisops.osfamily import InitScript


@dataclass
class Service:
    """
    Everything a service descriptor needs to know about one Sentinel.

    Arguments:
        name: Service name, e.g. redis-sentinel_mymaster.
        binary: Absolute path of redis-sentinel.
        config_path: Config file Sentinel runs with. Sentinel rewrites it.
        pid_path: Pid file written by Sentinel.
        pid_dir: Directory of the pid file, created on start.
        user: User Sentinel runs as.
        group: Group Sentinel runs as.
    """
    name: str
    binary: str
    config_path: str
    pid_path: str
    pid_dir: str
    user: str
    group: str


def systemd_unit(svc: Service) -> str:
    return f"""[Unit]
Description=Redis Sentinel {svc.name}
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
User={svc.user}
Group={svc.group}
ExecStartPre=+/usr/bin/install -d -o {svc.user} -g {svc.group} -m 755 {svc.pid_dir}
ExecStart={svc.binary} {svc.config_path}
ExecStop=/bin/kill -s TERM $MAINPID
Restart=always
LimitNOFILE=10032

[Install]
WantedBy=multi-user.target
"""


def debian(svc: Service) -> str:
    return f"""#!/bin/sh
### BEGIN INIT INFO
# Provides:          {svc.name}
# Required-Start:    $syslog $remote_fs $network
# Required-Stop:     $syslog $remote_fs $network
# Default-Start:     2 3 4 5
# Default-Stop:      0 1 6
# Short-Description: Redis Sentinel {svc.name}
### END INIT INFO

PATH=/usr/local/sbin:/usr/local/bin:/sbin:/bin:/usr/sbin:/usr/bin
DAEMON={svc.binary}
DAEMON_ARGS={svc.config_path}
NAME={svc.name}
PIDFILE={svc.pid_path}

test -x $DAEMON || exit 0
. /lib/lsb/init-functions

case "$1" in
  start)
    log_daemon_msg "Starting Redis Sentinel" "$NAME"
    install -d -o {svc.user} -g {svc.group} -m 755 {svc.pid_dir}
    if start-stop-daemon --start --quiet --oknodo --umask 007 --pidfile $PIDFILE \\
        --chuid {svc.user}:{svc.group} --exec $DAEMON -- $DAEMON_ARGS; then
      log_end_msg 0
    else
      log_end_msg 1
    fi
    ;;
  stop)
    log_daemon_msg "Stopping Redis Sentinel" "$NAME"
    if start-stop-daemon --stop --retry forever/TERM/1 --quiet --oknodo --pidfile $PIDFILE --exec $DAEMON; then
      log_end_msg 0
    else
      log_end_msg 1
    fi
    rm -f $PIDFILE
    ;;
  restart|force-reload)
    $0 stop
    $0 start
    ;;
  status)
    status_of_proc -p $PIDFILE $DAEMON $NAME
    ;;
  *)
    echo "Usage: /etc/init.d/$NAME {{start|stop|restart|force-reload|status}}" >&2
    exit 1
    ;;
esac

exit 0
"""


def redhat(svc: Service) -> str:
    return f"""#!/bin/sh
#
# {svc.name}  Redis Sentinel
#
# chkconfig:   - 85 15
# description: Redis Sentinel monitors Redis masters and coordinates failover.
# processname: redis-sentinel
# config:      {svc.config_path}
# pidfile:     {svc.pid_path}

. /etc/rc.d/init.d/functions

exec={svc.binary}
name={svc.name}
pidfile={svc.pid_path}
conf={svc.config_path}
lockfile=/var/lock/subsys/$name

start() {{
    [ -x $exec ] || exit 5
    [ -f $conf ] || exit 6
    install -d -o {svc.user} -g {svc.group} -m 755 {svc.pid_dir}
    echo -n $"Starting $name: "
    daemon --user {svc.user} --pidfile $pidfile "$exec $conf"
    retval=$?
    echo
    [ $retval -eq 0 ] && touch $lockfile
    return $retval
}}

stop() {{
    echo -n $"Stopping $name: "
    killproc -p $pidfile $name
    retval=$?
    echo
    [ $retval -eq 0 ] && rm -f $lockfile
    return $retval
}}

case "$1" in
    start)
        status -p $pidfile $name >/dev/null 2>&1 && exit 0
        start
        ;;
    stop)
        status -p $pidfile $name >/dev/null 2>&1 || exit 0
        stop
        ;;
    restart)
        stop
        start
        ;;
    status)
        status -p $pidfile $name
        ;;
    *)
        echo $"Usage: $0 {{start|stop|restart|status}}"
        exit 2
esac
exit $?
"""


def gentoo(svc: Service) -> str:
    return f"""#!/sbin/openrc-run

name="{svc.name}"
description="Redis Sentinel {svc.name}"
command="{svc.binary}"
command_args="{svc.config_path}"
command_user="{svc.user}:{svc.group}"
pidfile="{svc.pid_path}"

depend() {{
    use localmount logger
    after keepalived
}}

start_pre() {{
    checkpath -d -m 0755 -o {svc.user}:{svc.group} {svc.pid_dir}
}}
"""


_RENDERERS = {
    InitScript.DEBIAN: debian,
    InitScript.REDHAT: redhat,
    InitScript.GENTOO: gentoo,
}


def render(init_script: InitScript, svc: Service) -> str:
    """
    Renders a legacy init script from the template OS profile picked.

    Raises:
        UnsupportedOSError: no template, or an unknown one, was given.
    """
    renderer = _RENDERERS.get(init_script)
    if renderer is None:
        raise UnsupportedOSError(f'no init script template {init_script!r}')
    return renderer(svc)

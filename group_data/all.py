import os

_sudo = True

# Generate SSH config for Pyinfra
os.system('vagrant ssh-config >tests/vagrant_ssh_config')
ssh_config_file = 'tests/vagrant_ssh_config'

# Redis is installed from distribution packages on test machines
redis_user = 'redis'
redis_group = 'redis'
redis_install_dir = '/usr/bin'

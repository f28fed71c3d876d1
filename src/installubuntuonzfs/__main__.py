import sys

from installubuntuonzfs import install_ubuntu_on_zfs

sys.exit(install_ubuntu_on_zfs())

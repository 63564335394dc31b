"""Move Everything installer backend.

Installs and maintains the Move Everything framework on an Ableton Move
over the local network.

Quickstart::

    from move_installer.manager import Installer

    installer = Installer()                      # reads MOVE_INSTALLER_* from env
    await installer.validate_device("move.local")
    state = await installer.operations.check_installed_versions()
"""

__version__ = "1.0.0"

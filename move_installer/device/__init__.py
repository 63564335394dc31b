"""Device side of the installer — session state, keys and trust bootstrap.

  - Session: the single device address and auth cookie
  - Keys: locate or generate the installer's SSH keypair
  - Trust: challenge/response, key submission and approval polling
  - SSH config: ``move.local`` / ``movedevice`` aliases for install.sh
"""

"""ServerNap

Listens on a Minecraft server's port while the real server is off, starts it
when a player tries to join and stops it over RCON once nobody has been
online for a while.
"""

__version__ = "1.0.0"
__author__ = "ServerNap"

"""
Game relay server.
Relays player events between every client of one shared session.
"""
from gamerelay.network.server import main


if __name__ == "__main__":
    main()

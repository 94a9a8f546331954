"""Allow running the server via: python -m tavern_bridge.server"""

from tavern_bridge.server.cli import main

main()

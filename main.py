import asyncio
import os
import sys

from statebridge.helpers import DEFAULT_ADDRESS, setup_logging
from statebridge.protocol import CommandRouter
from statebridge.server import ServerState, StateServer
from statebridge.state import PlayerSnapshot, WorldInfo, WorldSnapshot, WorldState


async def serve(address: str) -> None:
    # Stand-in for a host that publishes snapshots from its own game loop.
    world = WorldState(WorldSnapshot(
        time_of_day=600,
        player=PlayerSnapshot(
            name="Farmer",
            money=500,
            levels={"farming": 1, "fishing": 0, "foraging": 0, "mining": 0, "combat": 0},
        ),
    ))
    router = CommandRouter(WorldInfo(world).handlers())
    server = StateServer(router, address)
    await server.start()
    if server.state is not ServerState.RUNNING:
        return
    try:
        await asyncio.Event().wait()
    finally:
        await server.dispose()

# our entrypoint for statebridge
if __name__ == "__main__":
    setup_logging()
    address = sys.argv[1] if len(sys.argv) > 1 else os.environ.get("STATEBRIDGE_ADDRESS", DEFAULT_ADDRESS)
    try:
        asyncio.run(serve(address))
    except KeyboardInterrupt:
        print("Server stopped.")

import asyncio
import logging
import sys

from aiohttp_mcp_transport import ClientConfig, MCPClient, StreamableHTTPChannel

logging.basicConfig(level=logging.INFO)

MCP_SERVER_URL = "http://localhost:8080/mcp"


async def on_progress(progress: float, total: float | None, message: str | None) -> None:
    print(f"progress {progress}/{total}: {message}")


async def main(timezone: str) -> None:
    config = ClientConfig(request_timeout=10)
    async with StreamableHTTPChannel(MCP_SERVER_URL, config=config) as channel:
        async with MCPClient(channel, config=config) as client:
            info = await client.initialize()
            print(f"Connected to {info.serverInfo.name} {info.serverInfo.version}")

            await client.set_logging_level("info")
            result = await client.request("time/get", {"timezone": timezone}, progress_callback=on_progress)
            print(f"It is {result['time']} in {result['timezone']}")

            await channel.terminate()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "UTC"))

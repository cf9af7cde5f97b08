"""planloop MCP server."""

from typing import Optional

from mcp.server.fastmcp import FastMCP

from .config import Config, get_config
from .tools import register_all_tools


def create_server(config: Optional[Config] = None) -> FastMCP:
	"""Build the FastMCP server with all plan tools registered."""
	mcp = FastMCP("planloop")
	register_all_tools(mcp, config or get_config())
	return mcp


def main() -> None:
	"""Run the server over stdio."""
	create_server().run()


if __name__ == "__main__":
	main()

"""MCP tool registration."""

from mcp.server.fastmcp import FastMCP

from ..config import Config
from .plans import register_plan_resources, register_plan_tools


def register_all_tools(mcp: FastMCP, config: Config) -> None:
	"""Register every planloop tool and resource."""
	register_plan_tools(mcp, config)
	register_plan_resources(mcp, config)


__all__ = ["register_all_tools", "register_plan_resources", "register_plan_tools"]

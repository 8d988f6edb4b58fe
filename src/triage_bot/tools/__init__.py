from triage_bot.tools.builtin import BuiltinTool, ToolContext, default_builtin_tools
from triage_bot.tools.gateway import ToolCatalog, ToolGateway, ToolSpec

__all__ = ["BuiltinTool", "ToolCatalog", "ToolContext", "ToolGateway", "ToolSpec", "default_builtin_tools"]

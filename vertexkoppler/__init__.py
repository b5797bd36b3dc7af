"""Local OpenAI-compatible proxy for Vertex AI Gemini models with MCP tool support."""

__version__ = "0.1.0"

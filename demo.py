"""
Demo: one generation session with tool calling, rendered live with rich.

Usage:
    python demo.py [endpoint] [model]

The endpoint defaults to "openai"; set its API key in the environment or in
a .env file (see llmrelay/config.py for custom endpoint maps).
"""
import asyncio
import sys

from llmrelay import (
    ClientRegistry, GenerationSession, InMemoryConversationStore, RichStreamPrinter, SessionOptions,
    Settings, ToolInvoker, ToolRegistry, configure_logging, create_message,
)

tools = ToolRegistry()


@tools.tool(
    description="Get the current weather for a city",
    parameters={
        "location": {"type": "string", "description": "City name"},
        "unit": {"type": "string", "enum": ["celsius", "fahrenheit"]},
    },
    required=["location"],
)
def get_weather(args):
    """Mock weather lookup."""
    weather_data = {
        "Paris": {"temp": 18, "condition": "Partly cloudy"},
        "London": {"temp": 14, "condition": "Rainy"},
        "Tokyo": {"temp": 22, "condition": "Sunny"},
    }
    data = weather_data.get(args["location"], {"temp": 15, "condition": "Unknown"})
    temp = data["temp"]
    if args.get("unit") == "fahrenheit":
        temp = int(temp * 9 / 5 + 32)
    return {"location": args["location"], "temperature": temp, "condition": data["condition"]}


async def main(endpoint: str = "openai", model: str = None):
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    registry = ClientRegistry.from_settings(settings)

    store = InMemoryConversationStore()
    await store.append("demo", create_message("system", "You are a concise assistant. Answer in markdown."))

    session = GenerationSession(
        conversation_id="demo",
        client=registry.resolve(endpoint, model),
        storage=store,
        user_message=create_message("user", "What's the weather like in Paris and Tokyo?"),
        invoker=ToolInvoker(tools, timeout=settings.tool_timeout_seconds),
        options=SessionOptions.from_settings(settings),
        max_output_tokens=500,
    )

    printer = RichStreamPrinter(title=f"{endpoint} / {session.model}")
    try:
        await printer.print_stream(session.run())
    finally:
        await registry.aclose()


if __name__ == "__main__":
    asyncio.run(main(*sys.argv[1:3]))

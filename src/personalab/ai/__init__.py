"""Agent conversation engine: turns, model client, tools and orchestration."""

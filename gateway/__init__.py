"""Messaging gateway -- configuration, platform adapters and the runner.

**config.py**
    Layered settings (dataclass defaults, ~/.dorothy/config.yaml, env vars).

**platforms/**
    Platform adapters. ``base.py`` defines MessageEvent and the adapter
    interface; ``discord.py`` implements it with discord.py.

**run.py**
    GatewayRunner: routes each inbound message through the conversation
    registry, the command interpreter and the completion loop.
"""

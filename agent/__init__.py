"""Agent internals -- conversation state and the completion pipeline.

Module Overview
---------------
**token_estimator.py**
    Whitespace-split token estimate used for local budget enforcement.

**conversation.py**
    ConversationContext: human/agent turn logs, preamble, sampling config,
    purge-half truncation, prompt rendering and stop tokens.

**registry.py**
    ContextRegistry: one ConversationContext per ConversationKey, created
    lazily with an atomic get-or-create.

**completion_client.py**
    Async client for an OpenAI-compatible text completions endpoint.

**completion_loop.py**
    Multi-round completion loop that stitches capped completions into one
    agent turn.

**commands.py**
    Parser and interpreter for the in-band ``!`` operator commands.

**config_validator.py**
    Startup checks for required settings.

Architecture
------------
1. **No ambient state**: every context lives in a registry owned by the
   gateway runner.

2. **No circular imports**: modules depend on external packages,
   dorothy_constants and modules listed above them, never on gateway/
   at import time.

3. **Locks around mutation only**: the completion loop never holds a
   conversation lock across a network call.
"""

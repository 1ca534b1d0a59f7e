"""Shared constants for Dorothy.

Import-safe module with no dependencies and can be imported from anywhere
without risk of circular imports.
"""

OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_COMPLETION_MODEL = "davinci-002"

# Per-conversation budget, in estimated tokens
TOKEN_BUDGET_CEILING = 1500

# Completion loop
MAX_NEW_TOKENS_PER_CALL = 50
CHOICES_PER_CALL = 1
DEFAULT_COMPLETION_TIMEOUT = 30.0
DEFAULT_MAX_ROUNDS = 20

DEFAULT_AGENT_NAME = "AI"
DEFAULT_COMMAND_PREFIX = "!"

DEFAULT_PREAMBLE = (
    "The following is a conversation with an AI named Dorothy. Dorothy has short, "
    "red hair, red eyes and extremely pale (almost white) skin. Dorothy appears to "
    "have a bubbly, joyful and somewhat flirtatious attitude. She often greets every "
    "patron politely and doesn't at any point seem overly aggressive or violent. "
    "She takes great pride in her work"
)

COMPLETION_FAILED_MESSAGE = "Failed to complete, try resetting (use !reset)"

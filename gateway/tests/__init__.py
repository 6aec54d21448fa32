"""Tests for the room history, subscription hub and websocket gateway."""

import logging
import warnings

# create_app stores runtime state under plain string keys
warnings.filterwarnings(
    "ignore",
    message=r".*recommended to use web\.AppKey.*",
    category=Warning,
)

logging.getLogger("asyncio").setLevel(logging.ERROR)

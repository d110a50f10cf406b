import logging

logger = logging.getLogger("llama-stream")

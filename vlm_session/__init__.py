"""Multimodal chat session manager for local llama.cpp vision-language models."""

# Native runtime logs reach loguru through the runtime binding.
import logging as _std_logging

_std_logging.getLogger("llama_cpp").setLevel(_std_logging.WARNING)

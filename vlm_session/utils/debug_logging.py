"""Debug logging utilities for prompts and generation statistics."""

from loguru import logger


def log_debug_prompt(prompt: str) -> None:
    """Log the rendered prompt in a boxed format for verbose mode.

    Parameters
    ----------
    prompt : str
        The rendered prompt handed to the tokenizer.
    """
    logger.info("━━━━━━━━━━━━━━━━━━━━━━━RENDERED PROMPT━━━━━━━━━━━━━━━━━━━━━━━")
    logger.info(prompt)
    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")


def log_debug_stats(
    prompt_positions: int,
    generated_tokens: int,
    n_past: int,
    generation_tps: float,
    stop_reason: str,
) -> None:
    """Log generation statistics in a boxed format for verbose mode.

    Parameters
    ----------
    prompt_positions : int
        Context positions consumed by the evaluated prompt (text and images).
    generated_tokens : int
        Number of tokens sampled in this turn.
    n_past : int
        Position counter after the turn.
    generation_tps : float
        Generation speed in tokens per second.
    stop_reason : str
        Why the loop ended (end token, antiprompt or max tokens).
    """
    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    logger.info("📊 DEBUG: Generation Statistics")
    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    logger.info(f"🎫 Prompt Positions:  {prompt_positions:,}")
    logger.info(f"✨ Generated Tokens:  {generated_tokens:,}")
    logger.info(f"📈 Context Position:  {n_past:,}")
    logger.info(f"⚡ Generation Speed:  {generation_tps:.2f} tokens/sec")
    logger.info(f"🛑 Stop Reason:       {stop_reason}")
    logger.info("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")

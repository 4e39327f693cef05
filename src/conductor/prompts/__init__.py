from .loader import get_system_prompt, load_prompt

__all__ = ["get_system_prompt", "load_prompt"]

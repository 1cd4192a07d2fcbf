from beautybook.config.config import Config

__all__ = ["Config"]

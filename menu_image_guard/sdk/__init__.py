"""
SDK for Menu Image Guard.

Provides the client for the external image generation service.
"""

from .gemini_client import GeminiImageClient, GeneratedImage, build_image_prompt

__all__ = ["GeminiImageClient", "GeneratedImage", "build_image_prompt"]

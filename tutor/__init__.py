"""
Tutor Pipeline - Source Package

Streaming response pipeline for a multi-agent tutoring assistant using
Azure OpenAI and Azure Speech.

This package provides:
- Session routing between coordinator, subject and support tutors
- Streaming sentence extraction and bounded parallel speech synthesis
- Answer validation with bounded regeneration
- HTTP and CLI interfaces
"""

__version__ = "1.0.0"

from tutor.config import settings

__all__ = ["settings", "__version__"]

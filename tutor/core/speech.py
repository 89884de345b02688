"""
Speech Synthesis Module

Converts one piece of speakable text into encoded audio bytes with Azure
Speech. Synthesis is request/response: the synthesizer has no audio output
device and the SDK's blocking result wait runs in a worker thread.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import azure.cognitiveservices.speech as speechsdk

from tutor.config import settings
from tutor.logger import get_logger

logger = get_logger(__name__)


class SynthesisError(Exception):
    """Raised when the synthesis provider cannot produce audio."""


class SynthesisProvider(ABC):
    """Turns text into audio bytes."""

    @abstractmethod
    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        ...


def escape_ssml(text: str) -> str:
    """Escape special characters for SSML."""
    return (
        text.replace("&", "&amp;")
            .replace("<", "&lt;")
            .replace(">", "&gt;")
            .replace('"', "&quot;")
            .replace("'", "&apos;")
    )


def build_ssml(text: str, voice: str, language: str = "en-US", rate: str = "1.0") -> str:
    """Build SSML for one synthesis request."""
    return f"""<speak version="1.0" xmlns="http://www.w3.org/2001/10/synthesis" xml:lang="{language}">
    <voice name="{voice}">
        <prosody rate="{rate}">
            {escape_ssml(text)}
        </prosody>
    </voice>
</speak>"""


class AzureSpeechSynthesizer(SynthesisProvider):
    """
    Azure Speech synthesis to MP3 bytes.

    Usage:
        tts = AzureSpeechSynthesizer()
        audio = await tts.synthesize("Hello there.", voice="en-US-GuyNeural")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        region: Optional[str] = None,
        default_voice: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        api_key = api_key or settings.speech.api_key
        region = region or settings.speech.region
        if not (api_key and region):
            raise ValueError(
                "Azure Speech not configured. Set AZURE_SPEECH_KEY and "
                "AZURE_SPEECH_REGION in .env"
            )

        self._speech_config = speechsdk.SpeechConfig(subscription=api_key, region=region)
        # MP3 for web playback
        self._speech_config.set_speech_synthesis_output_format(
            speechsdk.SpeechSynthesisOutputFormat.Audio16Khz32KBitRateMonoMp3
        )
        self._default_voice = default_voice or settings.speech.voice_name
        self._language = settings.speech.language
        self._timeout = timeout or settings.speech.timeout

        logger.info(f"Speech synthesis configured: region={region}, voice={self._default_voice}")

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        if not text.strip():
            return b""

        synthesizer = speechsdk.SpeechSynthesizer(
            speech_config=self._speech_config,
            audio_config=None  # capture bytes, no speaker
        )
        ssml = build_ssml(text, voice or self._default_voice, self._language)

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(lambda: synthesizer.speak_ssml_async(ssml).get()),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise SynthesisError(f"Synthesis timed out after {self._timeout}s") from e

        if result.reason == speechsdk.ResultReason.SynthesizingAudioCompleted:
            return result.audio_data

        if result.reason == speechsdk.ResultReason.Canceled:
            details = result.cancellation_details
            if details and details.reason == speechsdk.CancellationReason.Error:
                raise SynthesisError(f"Synthesis canceled: {details.error_details}")
            raise SynthesisError("Synthesis canceled")

        raise SynthesisError(f"Unexpected synthesis result: {result.reason}")

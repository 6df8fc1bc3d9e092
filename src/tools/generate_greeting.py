"""Pre-generate the greeting WAV played to every caller."""

from __future__ import annotations

import argparse
import asyncio
import io
import logging
from pathlib import Path

import numpy as np
import soundfile as sf
from openai import AsyncOpenAI

from config.settings import get_settings
from telephony.wav import pcm16_resample, wav_bytes

LOGGER = logging.getLogger(__name__)

DEFAULT_TEXT = "Merhaba. Hoşgeldiniz. Size nasıl yardımcı olabilirim?"


def decode_to_pcm16(audio: bytes, dst_rate: int) -> bytes:
    """Decode any soundfile-readable audio to mono PCM16 at ``dst_rate``."""

    with sf.SoundFile(io.BytesIO(audio), mode="r") as f:
        samples = f.read(dtype="float32")
        src_rate = int(f.samplerate)

    if isinstance(samples, np.ndarray) and samples.ndim > 1:
        samples = np.mean(samples, axis=1)

    pcm = np.clip(samples * 32767.0, -32768, 32767).astype(np.int16)
    return pcm16_resample(pcm, src_rate, dst_rate).astype("<i2").tobytes()


async def synthesize_greeting(text: str, *, model: str, voice: str) -> bytes:
    settings = get_settings()
    if not settings.openai_api_key:
        raise ValueError("OPENAI_API_KEY must be configured to synthesize the greeting.")

    client = AsyncOpenAI(api_key=settings.openai_api_key)
    response = await client.audio.speech.create(
        model=model,
        voice=voice,
        input=text,
        response_format="wav",
    )
    return response.content


def _parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Generate the caller greeting with OpenAI TTS")
    parser.add_argument("--text", default=DEFAULT_TEXT)
    parser.add_argument("--output", type=Path, default=settings.greeting_path or Path("greeting.wav"))
    parser.add_argument("--model", default="tts-1-hd")
    parser.add_argument("--voice", default="nova")
    parser.add_argument("--rate", type=int, default=settings.telephony_sample_rate)
    return parser.parse_args()


async def _amain() -> None:
    args = _parse_args()
    LOGGER.info("Generating greeting: %r", args.text)
    audio = await synthesize_greeting(args.text, model=args.model, voice=args.voice)
    pcm = decode_to_pcm16(audio, args.rate)
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_bytes(wav_bytes(pcm, args.rate))
    LOGGER.info("Greeting saved: %s (%.1f KB)", args.output, args.output.stat().st_size / 1024)


def main() -> None:
    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(_amain())


if __name__ == "__main__":
    main()

from __future__ import annotations

import wave
from io import BytesIO

import numpy as np

from telephony.g711 import ulaw_decode

NARROWBAND_SAMPLE_RATE = 8000


def pcm16_to_wav_bytes(pcm: np.ndarray, sample_rate: int = NARROWBAND_SAMPLE_RATE) -> bytes:
    """Frame mono PCM16 samples as a 44-byte-header WAV file."""

    pcm_bytes = np.asarray(pcm).astype("<i2").tobytes()
    buffer = BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm_bytes)
    return buffer.getvalue()


def ulaw_to_wav_bytes(ulaw_bytes: bytes, sample_rate: int = NARROWBAND_SAMPLE_RATE) -> bytes:
    return pcm16_to_wav_bytes(ulaw_decode(ulaw_bytes), sample_rate)

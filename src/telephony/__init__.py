"""Telephony audio helpers for the Twilio Media Streams leg.

Twilio streams 8 kHz G.711 mu-law; these helpers decode it to PCM16 and frame
PCM16 as WAV for offline inspection.
"""

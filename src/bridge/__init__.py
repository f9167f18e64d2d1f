"""Per-call bridge between Twilio Media Streams and the OpenAI Realtime API."""

"""Upstream clients -- speech-to-text (Deepgram) and text generation (LiteLLM)."""

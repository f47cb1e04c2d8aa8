"""Realtime relay between the Vonage media socket and the OpenAI Realtime API.

One call is one SessionRelay: the caller's 16kHz PCM goes up to the model,
the model's 24kHz PCM comes back resampled and framed, and caller speech
interrupts whatever the model is saying.
"""

"""
Voice control: a voice-assistant session with PIN-gated function calls.
"""

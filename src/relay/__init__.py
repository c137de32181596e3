"""Session bridge between Twilio Media Streams and a streaming transcription backend.

Inbound telephony audio is decoded by ``relay.codec``, forwarded by one
``relay.bridge.SessionBridge`` per call, and the transcripts coming back are
written to the log.
"""

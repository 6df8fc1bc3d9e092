"""Telephony-side building blocks for the call-to-AI bridge.

The SIP stack itself is an external collaborator. This package only holds the
pieces that sit on our side of it: the collaborator contract (`media`), WAV
framing for recorder/player files (`wav`) and voice activity detection (`vad`).
"""

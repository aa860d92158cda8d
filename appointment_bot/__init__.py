"""Conversational appointment scheduling for a WhatsApp intake channel."""

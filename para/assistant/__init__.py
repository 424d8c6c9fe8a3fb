"""Conversation with the OpenAI assistant over the synced vector store."""

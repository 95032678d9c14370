"""Conversation engine: session store, turn and regeneration controllers.

Import :class:`geminichat.engine.chat_engine.ChatEngine` for the public facade.
"""

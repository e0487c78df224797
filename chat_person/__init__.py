"""
chat-person - a persona that hangs out in group chats

Listens on Slack and Discord, decides when a real person would chime in,
and answers through an OpenAI-compatible model that can react to messages,
read quoted messages and look up slang.
"""

__version__ = "0.1.0"

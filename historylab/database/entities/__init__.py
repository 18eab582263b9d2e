"""
ORM entities.

- chat_message: one row per message of a conversation, parts stored as JSON
- conversation_log: one analytics document per conversation
- feedback_report: problem reports filed through the ``submitFeedback`` tool
"""

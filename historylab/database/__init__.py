"""
Database Package
================

- config : settings (pydantic-settings) and the SQLAlchemy engine
- entities : ORM tables for messages, conversation logs and feedback reports
- daos : query helpers taking an explicit session
- helpers : the ``@transactional`` session decorator
- core : transactional service functions and the stores the chat layer uses
"""

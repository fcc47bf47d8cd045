"""
Workflow SLA Engine
SQLAlchemy model package.

Every model module imports the shared ``db`` extension from here:

    from workflow_engine.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

"""
Workflow SLA Engine
User profile model backing the default user directory.
"""

from workflow_engine.models import db
from workflow_engine.utils.helpers import isoformat, utc_now

HIL_OPERATOR_ROLE = "hil_operator"


class UserProfile(db.Model):
    __tablename__ = "user_profiles"

    id = db.Column(db.String(150), primary_key=True)
    full_name = db.Column(db.String(200), nullable=False, default="")
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(40), nullable=False, default=HIL_OPERATOR_ROLE, index=True,
                     comment="hil_operator | client_user | admin")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    def to_dict(self):
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<UserProfile {self.id} ({self.role})>"

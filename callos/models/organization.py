"""
Organization, membership and profile models.
"""
from sqlalchemy import Column, String, Text, Boolean, DateTime, JSON
from callos.models.base import Base, new_uuid, utcnow


class Organization(Base):
    """Tenant owning meetings, meeting types and integrations."""

    __tablename__ = 'organizations'

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(255), nullable=False)
    webhook_target_url = Column(Text, nullable=True)  # downstream automation endpoint
    plan = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Organization(id='{self.id}', name='{self.name}')>"


class OrganizationContext(Base):
    """Company/product context handed to the automation system."""

    __tablename__ = 'organization_context'

    id = Column(String(36), primary_key=True, default=new_uuid)
    organization_id = Column(String(36), nullable=False, unique=True, index=True)
    company_name = Column(String(255), nullable=True)
    company_description = Column(Text, nullable=True)
    product_name = Column(String(255), nullable=True)
    product_description = Column(Text, nullable=True)
    target_audience = Column(Text, nullable=True)
    value_propositions = Column(JSON, nullable=True)
    common_objections = Column(JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "company_name": self.company_name,
            "company_description": self.company_description,
            "product_name": self.product_name,
            "product_description": self.product_description,
            "target_audience": self.target_audience,
            "value_propositions": self.value_propositions,
            "common_objections": self.common_objections,
        }


class Profile(Base):
    """User profile mirrored from the hosted auth provider."""

    __tablename__ = 'profiles'

    id = Column(String(36), primary_key=True)
    email = Column(String(255), nullable=True, index=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    email_signature = Column(Text, nullable=True)
    is_super_admin = Column(Boolean, nullable=False, default=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def __repr__(self):
        return f"<Profile(id='{self.id}', email='{self.email}')>"


class UserRole(Base):
    """Membership of a user in an organization: owner, admin or member."""

    __tablename__ = 'user_roles'

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    organization_id = Column(String(36), nullable=False, index=True)
    role = Column(String(50), nullable=False)

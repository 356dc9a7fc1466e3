"""Closed value sets shared by ledger tables and request models."""

import enum


class OwnerType(str, enum.Enum):
    ORG = "ORG"
    USER = "USER"


class CreditType(str, enum.Enum):
    SESSION_1_1 = "SESSION_1_1"
    WEBINAR = "WEBINAR"


class Frequency(str, enum.Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


class TargetRole(str, enum.Enum):
    EMPLOYEE = "EMPLOYEE"
    ALL = "ALL"


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    HR = "HR"
    EMPLOYEE = "EMPLOYEE"
    COACH = "COACH"
    INDIVIDUAL = "INDIVIDUAL"


class OrganizationStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"

"""
Test helper functions and factory methods for the Access Review platform.
"""

from typing import Any, Dict, List, Optional


class TestDataFactory:
    """Factory for creating test data."""

    __test__ = False

    @staticmethod
    def create_test_identities() -> List[Dict[str, Any]]:
        """Create test identities: employees, their managers and an application owner."""
        return [
            {
                "user_id": "user1",
                "name": "John Doe",
                "email": "John.Doe@example.com",
                "manager_id": "mgr1",
                "status": "Active",
                "department": "Finance"
            },
            {
                "user_id": "user2",
                "name": "Jane Smith",
                "email": "jane.smith@example.com",
                "manager_id": "mgr2",
                "status": "Active",
                "department": "Operations"
            },
            {
                "user_id": "user3",
                "name": "Sam Leaver",
                "email": "sam.leaver@example.com",
                "manager_id": None,
                "status": "Inactive",
                "department": "Finance"
            },
            {
                "user_id": "mgr1",
                "name": "Maria Manager",
                "email": "maria.manager@example.com",
                "manager_id": None,
                "status": "Active"
            },
            {
                "user_id": "mgr2",
                "name": "Mark Manager",
                "email": "mark.manager@example.com",
                "manager_id": None,
                "status": "Active"
            },
            {
                "user_id": "owner1",
                "name": "Olivia Owner",
                "email": "olivia.owner@example.com",
                "manager_id": None,
                "status": "Active"
            }
        ]

    @staticmethod
    def create_test_applications() -> List[Dict[str, Any]]:
        """Create test applications."""
        return [
            {"app_id": "APP1", "name": "General Ledger", "owner_email": "Olivia.Owner@example.com"},
            {"app_id": "APP2", "name": "Payments", "owner_name": "Olivia Owner"},
            {"app_id": "APP3", "name": "Legacy CRM"}
        ]

    @staticmethod
    def create_account_rows(app_id: str = "APP1", user_id: str = "user1",
                            entitlements: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Create account extract rows for one user."""
        return [
            {"app_id": app_id, "user_id": user_id, "entitlement": entitlement}
            for entitlement in (entitlements or ["ENT_A", "ENT_B", "ENT_C"])
        ]

    @staticmethod
    def create_sod_policy(policy_id: str = "SOD1",
                          side1: tuple = ("APP1", "ENT_A"),
                          side2: tuple = ("APP1", "ENT_B"),
                          severity: str = "HIGH",
                          **overrides) -> Dict[str, Any]:
        """Create one SoD policy document body."""
        policy = {
            "id": policy_id,
            "name": f"{side1[1]} vs {side2[1]}",
            "app_id1": side1[0],
            "entitlement1": side1[1],
            "app_id2": side2[0],
            "entitlement2": side2[1],
            "severity": severity,
            "active": True
        }
        policy.update(overrides)
        return policy


#!/usr/bin/env python3
"""
Assign an approval role to a user.

Make someone an administrator (their submissions are auto-approved):
    python3 scripts/assign_role.py --user-id u_123 --email ops@example.com --role admin

Roles: admin, manager, developer, viewer.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

load_dotenv()

from scriptvault.core.rbac import set_user_role
from scriptvault.db.engine import get_session
from scriptvault.models.user_role import Role


async def _run(user_id: str, email: str, role: Role, assigned_by: str) -> dict:
    async for session in get_session():
        assignment = await set_user_role(
            session,
            user_id=user_id,
            email=email,
            role=role,
            assigned_by=assigned_by,
        )
        return {
            "user_id": assignment.user_id,
            "email": assignment.email,
            "role": Role(assignment.role).value,
            "assigned_by": assignment.assigned_by,
        }
    return {}


def main() -> None:
    parser = argparse.ArgumentParser(description="Assign an approval role to a user.")
    parser.add_argument("--user-id", required=True, help="User id as it appears in the token subject")
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", required=True, choices=[role.value for role in Role])
    parser.add_argument("--assigned-by", default="cli", help="Recorded as the assigner")
    args = parser.parse_args()

    summary = asyncio.run(
        _run(
            user_id=args.user_id,
            email=args.email,
            role=Role(args.role),
            assigned_by=args.assigned_by,
        )
    )
    print(json.dumps(summary, ensure_ascii=True, indent=2))


if __name__ == "__main__":
    main()

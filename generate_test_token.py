#!/usr/bin/env python
"""Generate a test JWT token for API testing."""

import sys

from src.perplex.api.auth import issue_token

user_id = sys.argv[1] if len(sys.argv) > 1 else "test-user"
token = issue_token(user_id)

print("Test JWT Token:")
print(token)
print("\nUse this token in the Authorization header:")
print(f"Authorization: Bearer {token}")

# scripts/create_bootstrap_code.py
# Creates the first invite code on a fresh database so the first admin can sign up.
import os
import sys

from dotenv import load_dotenv
from supabase import create_client

from mediatrack.invites import generate_secure_code
from mediatrack.repo import RepoError, SupabaseRepo

NEVER_EXPIRES = "2099-12-31T23:59:59+00:00"

def main():
    load_dotenv()
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_ANON_KEY")
    if not url or not key:
        print("Missing SUPABASE_URL / SUPABASE_ANON_KEY (set them in the environment or .env)")
        return 1

    print("Target:", url)
    email = input("Admin email address: ").strip()
    if "@" not in email:
        print("Invalid email address")
        return 1

    code = generate_secure_code()
    print("Generated invite code:", code)
    if input("Create this invite code? (yes/no): ").strip().lower() not in ("y", "yes"):
        print("Cancelled")
        return 0

    repo = SupabaseRepo(create_client(url, key))
    try:
        repo.insert("invite_codes", {
            "code": code,
            "intended_email": email,
            "created_by": None,
            "expires_at": NEVER_EXPIRES,
            "is_active": True,
            "max_uses": 1,
            "current_uses": 0,
        })
    except RepoError as e:
        print("Failed to create invite code:", e)
        if e.kind == "setup":
            print("The invite_codes table is missing; apply the database migrations first.")
        return 1

    print("Bootstrap invite code created.")
    print("  Invite code:", code)
    print("  Admin email:", email)
    print("Sign up with this email and code, then grant the account the admin role.")
    return 0

if __name__ == "__main__":
    sys.exit(main())

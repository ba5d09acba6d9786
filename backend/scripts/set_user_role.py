#!/usr/bin/env python3
"""
Define o papel (admin, manager, client) de um usuário do Supabase Auth na tabela user_roles.

Usage examples:
  python scripts/set_user_role.py gestor@example.com manager
  python scripts/set_user_role.py 3f1c0a9e-... admin --by-id
"""
import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))
ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=False)
else:
    load_dotenv(override=False)

from auth_utils import USER_ROLES_TABLE, VALID_ROLES  # noqa: E402
from db import execute, fetch_one  # noqa: E402


def find_user(identifier: str, by_id: bool = False):
    if by_id:
        return fetch_one(
            "SELECT id, email FROM auth.users WHERE id = %(user_id)s",
            {"user_id": identifier},
        )
    return fetch_one(
        "SELECT id, email FROM auth.users WHERE lower(email) = %(email)s",
        {"email": identifier.strip().lower()},
    )


def upsert_role(user_id: str, role: str) -> None:
    execute(
        f"""
        INSERT INTO {USER_ROLES_TABLE} (user_id, role)
        VALUES (%(user_id)s, %(role)s)
        ON CONFLICT (user_id) DO UPDATE SET role = EXCLUDED.role
        """,
        {"user_id": user_id, "role": role},
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Atualiza o papel de um usuário na tabela user_roles.")
    parser.add_argument("user", help="E-mail (ou id, com --by-id) do usuário.")
    parser.add_argument("role", choices=VALID_ROLES, help="Papel a atribuir.")
    parser.add_argument("--by-id", action="store_true", help="Interpreta o primeiro argumento como id do usuário.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    identifier = args.user.strip()
    if not identifier:
        print("Informe um e-mail ou id válido.", file=sys.stderr)
        return 1

    user = find_user(identifier, by_id=args.by_id)
    if not user:
        print(f"Nenhum usuário encontrado para {identifier}.", file=sys.stderr)
        return 1

    upsert_role(str(user["id"]), args.role)
    print(f"Papel {args.role} atribuído a {user.get('email') or user['id']} (id={user['id']}).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

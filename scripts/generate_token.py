#!/usr/bin/env python3
"""
Generar un token de sesión para probar la API

Uso:
    python scripts/generate_token.py --email admin@SMAN1.sch.id
    python scripts/generate_token.py --user-id <uuid> --role ADMIN
"""
import sys
import os
import asyncio
from datetime import timedelta

# Agregar directorio raíz al path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from shared.auth.jwt_handler import create_access_token
from shared.database import connection
from shared.database.models import User, UserRole


def generate_token(user_id: str, email: str = None, role: str = UserRole.user.value, hours: int = 24):
    """El rol del token es informativo: la API vuelve a leer el usuario en cada request"""
    data = {"sub": user_id, "role": role}
    if email:
        data["email"] = email
    return create_access_token(data, expires_delta=timedelta(hours=hours))


async def token_for_email(email: str, hours: int):
    await connection.init_db()
    try:
        async with connection.get_session_maker()() as db:
            user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    finally:
        await connection.close_db()

    if user is None:
        raise SystemExit(f"No existe un usuario con email {email}")
    return str(user.id), user.role, generate_token(str(user.id), user.email, user.role, hours)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Generar token JWT de prueba")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", help="UUID del usuario (sin consultar la base)")
    target.add_argument("--email", help="Buscar el usuario por email en la base")
    parser.add_argument("--role", default=UserRole.user.value, choices=[r.value for r in UserRole])
    parser.add_argument("--hours", type=int, default=24, help="Horas de validez")
    args = parser.parse_args()

    if args.email:
        user_id, role, token = asyncio.run(token_for_email(args.email, args.hours))
    else:
        user_id, role, token = args.user_id, args.role, generate_token(args.user_id, role=args.role, hours=args.hours)

    print(f"{role} {user_id}\n{token}\n")
    print(f'curl -H "Authorization: Bearer {token}" http://localhost:8000/api/v1/queue/my')

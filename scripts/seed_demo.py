#!/usr/bin/env python3
"""
Crear datos de demo: una escuela, un admin, N alumnos y una sesión abierta

Uso:
    DATABASE_URL=sqlite:///./antrikuy.db python scripts/seed_demo.py --students 5
"""
import sys
import os
import asyncio

# Agregar directorio raíz al path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.database import connection
from shared.database.models import School, User, Event, UserRole
from scripts.generate_token import generate_token


async def seed(students: int, school_code: str):
    await connection.init_db(create_all=True)

    async with connection.get_session_maker()() as db:
        school = School(name=f"Sekolah {school_code}", code=school_code)
        db.add(school)
        await db.flush()

        admin = User(school_id=school.id, name="Petugas TU", email=f"admin@{school_code}.sch.id", role=UserRole.admin.value)
        db.add(admin)

        users = [
            User(school_id=school.id, name=f"Siswa {i}", email=f"siswa{i}@{school_code}.sch.id")
            for i in range(1, students + 1)
        ]
        db.add_all(users)

        event = Event(school_id=school.id, code=f"{school_code}-KONSELING", name="Konseling BK", capacity=50)
        db.add(event)
        await db.commit()

        print(f"Escuela: {school.id} ({school.code})")
        print(f"Evento:  {event.id} ({event.code})")
        print(f"\nADMIN {admin.id}\n  {generate_token(str(admin.id), admin.email, UserRole.admin.value)}")
        for user in users:
            print(f"USER  {user.id}\n  {generate_token(str(user.id), user.email)}")

    await connection.close_db()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Sembrar datos de demo")
    parser.add_argument("--students", type=int, default=3, help="Cantidad de alumnos")
    parser.add_argument("--school-code", default="SMAN1", help="Código de la escuela")
    args = parser.parse_args()

    asyncio.run(seed(args.students, args.school_code))

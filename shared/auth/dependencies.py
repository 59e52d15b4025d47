"""Dependencies de autenticación para FastAPI"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict
from uuid import UUID
from shared.auth.jwt_handler import verify_token
from shared.database.connection import get_db
from shared.database.models import User, UserRole


security = HTTPBearer()


def user_to_identity(user: User) -> Dict:
    '''Proyección (user_id, school_id, role) que consume el motor de la cola'''
    return {
        'user_id': str(user.id),
        'school_id': str(user.school_id) if user.school_id else None,
        'role': user.role,
        'name': user.name,
        'email': user.email,
        'push_token': user.push_token,
    }


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> Dict:
    '''Obtener usuario actual desde token JWT'''
    token = credentials.credentials
    payload = await verify_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Token inválido o expirado',
            headers={'WWW-Authenticate': 'Bearer'},
        )

    user_id = payload.get('sub') or payload.get('user_id')
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Token inválido: falta user_id',
        )

    try:
        user_uuid = UUID(str(user_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Token inválido: user_id mal formado',
        )

    result = await db.execute(select(User).where(User.id == user_uuid))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='User tidak ditemukan',
        )

    return user_to_identity(user)


async def get_current_admin(
    current_user: Dict = Depends(get_current_user)
) -> Dict:
    '''Verificar que el usuario sea admin de escuela o super admin'''
    if current_user.get('role') not in [UserRole.admin.value, UserRole.super_admin.value]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role anda ({current_user.get('role')}) tidak memiliki akses ke sini."
        )
    return current_user

"""Manejo de JWT tokens (sesión del usuario y token firmado del ticket)"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
from jose import JWTError, jwt
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

JWT_SECRET_KEY = settings.JWT_SECRET_KEY
JWT_ALGORITHM = settings.JWT_ALGORITHM
JWT_ACCESS_TOKEN_EXPIRE_MINUTES = settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
TICKET_TOKEN_TTL_MINUTES = settings.TICKET_TOKEN_TTL_MINUTES


def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    '''Crear token de acceso JWT'''
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({'exp': expire, 'type': 'access'})
    encoded_jwt = jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)
    return encoded_jwt


def decode_token(token: str) -> Optional[Dict]:
    '''Decodificar y validar token JWT'''
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        return payload
    except JWTError:
        return None


async def verify_token(token: str) -> Optional[Dict]:
    '''Verificar token de sesión; None si es inválido, expirado o no es de acceso'''
    payload = decode_token(token)
    if payload is None:
        return None
    if payload.get('type', 'access') != 'access':
        logger.warning('Token rechazado: tipo %s', payload.get('type'))
        return None
    return payload


def create_ticket_token(
    queue_id: str,
    event_id: str,
    ttl_minutes: Optional[int] = None,
    now: Optional[datetime] = None
) -> tuple:
    '''
    Firmar el token del ticket que se muestra como QR

    Returns:
        (token, expires_at)
    '''
    now = now or datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=ttl_minutes or TICKET_TOKEN_TTL_MINUTES)
    payload = {
        'qid': str(queue_id),
        'eid': str(event_id),
        'type': 'ticket',
        'exp': expires_at,
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM), expires_at


def verify_ticket_token(token: str, now: Optional[datetime] = None) -> Dict:
    '''
    Verificar token del ticket

    Con `now` la expiración se compara contra ese instante en lugar del reloj
    (el mismo instante con el que se firmó en la operación).

    Raises:
        JWTError si la firma es inválida, expiró o no es un token de ticket
    '''
    if now is None:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    else:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM], options={'verify_exp': False})
        if 'exp' not in payload or now.timestamp() >= float(payload['exp']):
            raise JWTError('Signature has expired.')
    if payload.get('type') != 'ticket' or not payload.get('qid'):
        raise JWTError('Token no corresponde a un ticket')
    return payload

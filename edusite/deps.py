from fastapi import Depends, HTTPException, Request
from sqlmodel import Session
from . import crud, models


def get_session():
    # simple dependency that yields a session
    with Session(crud.engine) as session:
        yield session


def _request_token(request: Request):
    auth = request.headers.get('authorization')
    if auth and auth.lower().startswith('bearer '):
        return auth.split(' ', 1)[1].strip()
    return request.cookies.get('token')


def current_user(request: Request, session: Session = Depends(get_session)) -> models.User:
    """Resolve the signed-in user and expose it as request.state.user."""
    token = _request_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized: No token")
    user = crud.verify_user_token(session, token)
    if user is None:
        raise HTTPException(status_code=403, detail="Unauthorized: Invalid token")
    request.state.user = user
    return user


def require_admin(request: Request, session: Session = Depends(get_session)) -> models.User:
    token = _request_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing token")
    uid = crud.token_uid(token)
    if uid is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = crud.get_user_by_uid(session, uid)
    if user is None:
        raise HTTPException(status_code=404, detail="Cannot find user")
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Forbidden: User is not an admin")
    request.state.user = user
    return user

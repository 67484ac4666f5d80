"""
Utilidades compartidas por los tests
"""
from datetime import datetime, timedelta, timezone

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

def make_message(id, sender_id, receiver_id, minutes=None, is_read=False, content=None):
    """Mensaje tal y como lo devuelve el API (dict plano)"""
    return {
        "id": id,
        "sender_id": sender_id,
        "receiver_id": receiver_id,
        "subject": "",
        "content": content or f"message {id}",
        "created_at": BASE_TIME + timedelta(minutes=id if minutes is None else minutes),
        "is_read": is_read,
    }

def register(client, name, email, user_type="patient", password="password123"):
    """Registra un usuario y devuelve (user_id, headers con el token)"""
    r = client.post("/auth/signup", json={
        "name": name,
        "email": email,
        "password": password,
        "user_type": user_type,
    })
    assert r.status_code == 201, r.text
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return r.json()["user_id"], {"Authorization": f"Bearer {r.json()['access_token']}"}

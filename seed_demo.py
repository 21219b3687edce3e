# seed_demo.py
#
# Seeds a running library_service with demo patrons, books and loans.
# Create an administrator first:
#   flask --app library_service.app:create_app create-admin
# then run:  ADMIN_USER_ID=1 python seed_demo.py
import os

import requests

BASE_URL = os.getenv("LIBRARY_BASE_URL", "http://localhost:5000")
SERVICE_API_KEY = os.getenv("SERVICE_API_KEY", "dev-service-key")
ADMIN_USER_ID = os.getenv("ADMIN_USER_ID", "1")

USERS = [
    {
        "email": "editor@example.com",
        "password": "editor-pass-123",
        "full_name": "Erin Editor",
        "role": "editor",
    },
    {
        "email": "alice@example.com",
        "password": "alice-pass-123",
        "full_name": "Alice Reader",
        "phone": "+1 (416) 555-0100",
        "role": "patron",
    },
    {
        "email": "bob@example.com",
        "password": "bob-pass-1234",
        "full_name": "Bob Reader",
        "role": "patron",
    },
]

BOOKS = [
    {
        "isbn": "9780132350884",
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "category": "Software",
    },
    {
        "isbn": "9780201616224",
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
        "category": "Software",
    },
    {
        "isbn": "9780131103627",
        "title": "The C Programming Language",
        "author": "Brian W. Kernighan, Dennis M. Ritchie",
        "category": "Software",
    },
    {
        "isbn": "9780262033848",
        "title": "Introduction to Algorithms",
        "author": "Cormen, Leiserson, Rivest, Stein",
        "category": "Computer Science",
    },
    {
        "isbn": "9781491950357",
        "title": "Designing Data-Intensive Applications",
        "author": "Martin Kleppmann",
        "category": "Computer Science",
    },
    {
        "isbn": "9780441172719",
        "title": "Dune",
        "author": "Frank Herbert",
        "category": "Fiction",
    },
]


def headers(user_id):
    return {"X-API-Key": SERVICE_API_KEY, "X-User-Id": str(user_id)}


def check_service():
    """Hit /api/health and return True/False."""
    health_url = f"{BASE_URL.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except Exception as e:
        print(f"[ERROR] library_service not reachable at {health_url}: {e}")
        return False


def seed_users():
    print("\n== Creating users ==")
    ids = {}
    for u in USERS:
        try:
            resp = requests.post(
                f"{BASE_URL}/api/users",
                headers=headers(ADMIN_USER_ID),
                json=u,
                timeout=5,
            )
            print(f"  {u['email']}: {resp.status_code}")
            if resp.ok:
                ids[u["email"]] = resp.json()["user"]["id"]
            else:
                print(f"      Body: {resp.text.strip()}")
        except Exception as e:
            print(f"  {u['email']}: FAILED -> {e}")
    return ids


def seed_books():
    print("\n== Creating books ==")
    ids = []
    for i, book in enumerate(BOOKS, start=1):
        payload = dict(book)
        # vary copies per title to make availability more interesting
        payload["total_copies"] = 1 + (i % 3)  # 1-3 copies

        try:
            resp = requests.post(
                f"{BASE_URL}/api/books",
                headers=headers(ADMIN_USER_ID),
                json=payload,
                timeout=5,
            )
            print(f"  [{i:02}] {book['title']} -> {resp.status_code}")
            if resp.ok:
                ids.append(resp.json()["book"]["id"])
            else:
                print(f"      Body: {resp.text.strip()}")
        except Exception as e:
            print(f"  [{i:02}] {book['title']} -> FAILED: {e}")
    return ids


def seed_loans(user_ids, book_ids):
    print("\n== Recording loans ==")
    editor = user_ids.get("editor@example.com", ADMIN_USER_ID)
    patrons = [user_ids[e] for e in ("alice@example.com", "bob@example.com") if e in user_ids]

    for n, book_id in enumerate(book_ids[:4]):
        if not patrons:
            break
        patron = patrons[n % len(patrons)]
        resp = requests.post(
            f"{BASE_URL}/api/loans",
            headers=headers(editor),
            json={"book_id": book_id, "user_id": patron},
            timeout=5,
        )
        print(f"  book {book_id} -> user {patron}: {resp.status_code}")
        if not resp.ok:
            print(f"      Body: {resp.text.strip()}")


def main():
    print("Checking library service...")
    if not check_service():
        print("\nLibrary service is not reachable. Make sure it is running on 5000.")
        return

    user_ids = seed_users()
    book_ids = seed_books()
    seed_loans(user_ids, book_ids)

    print("\nDone.")
    print("Try hitting:")
    print(f"  {BASE_URL}/api/loans/stats")
    print(f"  {BASE_URL}/api/admin/reminders/run  (POST, administrator)")


if __name__ == "__main__":
    main()

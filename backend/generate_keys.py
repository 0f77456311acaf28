"""Generate secrets for a local .env.

TOKEN_ENCRYPTION_KEY encrypts store consumer keys/secrets at rest; changing
it later makes every stored credential undecryptable.
"""

import os
import secrets

from cryptography.fernet import Fernet

fernet_key = Fernet.generate_key().decode()
admin_secret = secrets.token_urlsafe(32)

print(f"Generated TOKEN_ENCRYPTION_KEY: {fernet_key}")
print(f"Generated ADMIN_SECRET_KEY: {admin_secret}")

template_path = ".env.template"
env_path = ".env"

if os.path.exists(template_path):
    with open(template_path, "r") as f:
        lines = f.read().splitlines()

    new_lines = []
    for line in lines:
        if line.startswith("TOKEN_ENCRYPTION_KEY="):
            new_lines.append(f"TOKEN_ENCRYPTION_KEY={fernet_key}")
        elif line.startswith("ADMIN_SECRET_KEY="):
            new_lines.append(f"ADMIN_SECRET_KEY={admin_secret}")
        else:
            new_lines.append(line)

    with open(env_path, "w") as f:
        f.write("\n".join(new_lines) + "\n")

    print(f"Successfully wrote to {env_path}")
else:
    print(f"{template_path} not found; copy the values above into your .env")

from models import db
from models.user import User, Role


def grant_role(user: User, role_name: str) -> bool:
    """Attach role_name to user, creating the role row if needed. Returns False if already held."""
    role = Role.query.filter_by(name=role_name).first()
    if not role:
        role = Role(name=role_name)
        db.session.add(role)

    if role in user.roles:
        return False
    user.roles.append(role)
    db.session.commit()
    return True

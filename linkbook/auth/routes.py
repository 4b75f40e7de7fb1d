from flask import jsonify, request
from flask_login import current_user, login_required, login_user, logout_user

from linkbook.auth import auth_bp
from linkbook.extensions import db
from linkbook.models import User


def _credentials():
    payload = request.get_json(silent=True) or request.form
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    return username, password


@auth_bp.route("/register", methods=["POST"])
def register():
    username, password = _credentials()
    if not username or not password:
        return jsonify({"error": "username and password are required"}), 400
    if User.query.filter_by(username=username).first():
        return jsonify({"error": "username already exists"}), 409

    user = User(username=username, is_active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return jsonify({"id": user.id, "username": user.username}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    username, password = _credentials()
    user = User.query.filter_by(username=username).first()
    if not user or not user.is_active or not user.check_password(password):
        return jsonify({"error": "invalid credentials"}), 401

    login_user(user)
    return jsonify({"id": user.id, "username": user.username})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"status": "signed_out"})


@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"id": current_user.id, "username": current_user.username})

# minisocial.py
"""
Mini Social: server-rendered Flask app backed by MongoDB

Key production notes:
 - Configure via environment variables (see Config.from_env).
 - The JWT signing secret must come from SOCIAL_JWT_SECRET_FILE (a mounted
   secret) or SOCIAL_JWT_SECRET; there is no built-in fallback.
 - Serve with a WSGI server (recommended): e.g.
     gunicorn -w 4 -b 0.0.0.0:5000 "minisocial:create_app()"
 - For uploads in production, prefer a reverse proxy (nginx) to serve
   files directly. This app can serve uploads for small demos.
"""

import os
import secrets
import datetime
import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    g,
    redirect,
    render_template_string,
    request,
    send_from_directory,
)
import jwt  # PyJWT
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename
from flask_cors import CORS

# -----------------------
# Configuration (env)
# -----------------------
BASE_DIR = Path(__file__).parent.resolve()

TOKEN_COOKIE = "token"
DEFAULT_AVATAR = "default.png"
ALLOWED_MIMETYPES = frozenset(["image/jpeg", "image/png", "image/gif", "image/webp"])
MAX_AGE = 150
# room for multipart boundaries and the other form fields
MULTIPART_OVERHEAD = 64 * 1024

logger = logging.getLogger("mini-social")


def _read_secret(env=None) -> str:
    env = os.environ if env is None else env
    secret_file = env.get("SOCIAL_JWT_SECRET_FILE")
    if secret_file:
        secret = Path(secret_file).read_text(encoding="utf-8").strip()
    else:
        secret = (env.get("SOCIAL_JWT_SECRET") or "").strip()
    if not secret:
        raise RuntimeError("SOCIAL_JWT_SECRET_FILE or SOCIAL_JWT_SECRET must provide a signing secret")
    return secret


@dataclass
class Config:
    jwt_secret: str
    mongodb_url: str = "mongodb://127.0.0.1:27017"
    mongodb_db: str = "miniproject"
    upload_folder: str = str(BASE_DIR / "public" / "images" / "upload")
    jwt_algorithm: str = "HS256"
    jwt_exp_seconds: int = 60 * 60 * 24 * 7  # default 7 days
    avatar_max_bytes: int = 2 * 1024 * 1024
    cors_origins: str = "*"  # set to origin(s) in prod
    cookie_secure: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env=None) -> "Config":
        env = os.environ if env is None else env
        return cls(
            jwt_secret=_read_secret(env),
            mongodb_url=env.get("SOCIAL_MONGODB_URL", cls.mongodb_url),
            mongodb_db=env.get("SOCIAL_MONGODB_DB", cls.mongodb_db),
            upload_folder=env.get("SOCIAL_UPLOAD_FOLDER", cls.upload_folder),
            jwt_algorithm=env.get("SOCIAL_JWT_ALGORITHM", cls.jwt_algorithm),
            jwt_exp_seconds=int(env.get("SOCIAL_JWT_EXP_SECONDS", cls.jwt_exp_seconds)),
            avatar_max_bytes=int(env.get("SOCIAL_AVATAR_MAX_BYTES", cls.avatar_max_bytes)),
            cors_origins=env.get("SOCIAL_CORS_ORIGINS", cls.cors_origins),
            cookie_secure=env.get("SOCIAL_COOKIE_SECURE", "0") == "1",
            log_level=env.get("SOCIAL_LOG_LEVEL", cls.log_level),
        )


bp = Blueprint("social", __name__)


# -----------------------
# Database helpers
# -----------------------
def get_db():
    return current_app.extensions["mongo_db"]


def ensure_indexes(db):
    """
    Idempotent; runs on every app start. The unique indexes back up the
    duplicate-registration check against concurrent sign-ups.
    """
    db.users.create_index([("email", ASCENDING)], unique=True)
    db.users.create_index([("username", ASCENDING)], unique=True)
    db.posts.create_index([("created_at", DESCENDING)])
    db.posts.create_index([("user", ASCENDING), ("created_at", DESCENDING)])


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def parse_object_id(value: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        abort(404)
    return ObjectId(value)


# -----------------------
# User store
# -----------------------
def get_user_by_id(user_id: ObjectId):
    return get_db().users.find_one({"_id": user_id})


def get_user_by_email(email: str):
    return get_db().users.find_one({"email": email})


def user_exists(email: str, username: str) -> bool:
    query = {"$or": [{"email": email}, {"username": username}]}
    return get_db().users.find_one(query, {"_id": 1}) is not None


def create_user(name, username, age, email, password) -> ObjectId:
    doc = {
        "name": name,
        "username": username,
        "age": age,
        "email": email,
        "password": generate_password_hash(password),
        "avatar": DEFAULT_AVATAR,
        "token_version": 0,
        "created_at": utcnow(),
    }
    return get_db().users.insert_one(doc).inserted_id


def set_user_avatar(user_id: ObjectId, filename: str):
    get_db().users.update_one({"_id": user_id}, {"$set": {"avatar": filename}})


def revoke_tokens(user_id: ObjectId):
    get_db().users.update_one({"_id": user_id}, {"$inc": {"token_version": 1}})


# -----------------------
# Post store
# -----------------------
def create_post(user_id: ObjectId, content, created_at=None) -> ObjectId:
    doc = {
        "user": user_id,
        "content": content,
        "created_at": created_at or utcnow(),
        "likes": [],
        "comments": [],
    }
    return get_db().posts.insert_one(doc).inserted_id


def get_post(post_id: ObjectId):
    return get_db().posts.find_one({"_id": post_id})


def update_post_content(post_id: ObjectId, owner_id: ObjectId, content) -> bool:
    res = get_db().posts.update_one(
        {"_id": post_id, "user": owner_id}, {"$set": {"content": content}}
    )
    return res.matched_count == 1


def toggle_like(post_id: ObjectId, user_id: ObjectId) -> Optional[bool]:
    """
    Flip user_id's membership in the post's likes.

    Each branch is a single conditional update on the post document; the
    rest of the document is never rewritten. Returns True when the like was
    added, False when removed and None when the post does not exist.
    """
    posts = get_db().posts
    res = posts.update_one(
        {"_id": post_id, "likes": {"$ne": user_id}}, {"$push": {"likes": user_id}}
    )
    if res.matched_count:
        return True
    res = posts.update_one({"_id": post_id}, {"$pull": {"likes": user_id}})
    if not res.matched_count:
        return None
    return False


def add_comment(post_id: ObjectId, user_id: ObjectId, text) -> bool:
    comment = {"user": user_id, "text": text, "created_at": utcnow()}
    res = get_db().posts.update_one({"_id": post_id}, {"$push": {"comments": comment}})
    return res.matched_count == 1


def list_posts(user_id: Optional[ObjectId] = None):
    """
    Newest first. Owners and commenters are resolved to user documents
    (without password hashes) under "owner" and "author".
    """
    db = get_db()
    query = {"user": user_id} if user_id is not None else {}
    posts = list(db.posts.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))

    user_ids = set()
    for post in posts:
        user_ids.add(post["user"])
        user_ids.update(c["user"] for c in post.get("comments", []))
    users = {
        u["_id"]: u
        for u in db.users.find({"_id": {"$in": list(user_ids)}}, {"password": 0})
    }

    for post in posts:
        post["owner"] = users.get(post["user"])
        for comment in post.get("comments", []):
            comment["author"] = users.get(comment["user"])
    return posts


# -----------------------
# JWT helpers
# -----------------------
def create_token(user) -> str:
    now = utcnow()
    payload = {
        "sub": str(user["_id"]),
        "ver": user.get("token_version", 0),
        "iat": now,
        "exp": now + datetime.timedelta(seconds=current_app.config["JWT_EXP_SECONDS"]),
    }
    return jwt.encode(payload, current_app.config["SECRET_KEY"], algorithm=current_app.config["JWT_ALGORITHM"])


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(
            token,
            current_app.config["SECRET_KEY"],
            algorithms=[current_app.config["JWT_ALGORITHM"]],
        )
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def user_from_token(token: Optional[str]):
    """Resolve a session token to its user, or None if it is absent, invalid, expired or revoked."""
    if not token:
        return None
    payload = decode_token(token)
    if not payload or not ObjectId.is_valid(payload.get("sub", "")):
        return None
    user = get_user_by_id(ObjectId(payload["sub"]))
    if user is None or payload.get("ver") != user.get("token_version", 0):
        return None
    return user


def set_token_cookie(response, token: str):
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        httponly=True,
        samesite="Lax",
        secure=current_app.config["COOKIE_SECURE"],
    )
    return response


def login_required(f):
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        token = request.cookies.get(TOKEN_COOKIE)
        user = user_from_token(token)
        if user is None:
            response = redirect("/login")
            if token:
                response.delete_cookie(TOKEN_COOKIE)
            return response
        g.current_user = user
        return f(*args, **kwargs)
    return wrapper


# -----------------------
# Upload helpers
# -----------------------
class UploadRejected(Exception):
    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status


def random_filename(original: str) -> str:
    ext = os.path.splitext(secure_filename(original or ""))[1].lower()
    millis = int(utcnow().timestamp() * 1000)
    return f"{secrets.token_hex(16)}{millis}{ext}"


def save_avatar_file(file_storage) -> str:
    """
    Validate and store an uploaded avatar. Returns the stored filename
    (relative to UPLOAD_FOLDER) or raises UploadRejected.
    """
    if file_storage is None or not file_storage.filename:
        raise UploadRejected("No file uploaded")
    mimetype = (file_storage.mimetype or "").lower()
    if mimetype not in ALLOWED_MIMETYPES:
        raise UploadRejected("Only images allowed")

    limit = current_app.config["AVATAR_MAX_BYTES"]
    stream = file_storage.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    if size > limit:
        raise UploadRejected("File too large", 413)

    folder = current_app.config["UPLOAD_FOLDER"]
    os.makedirs(folder, exist_ok=True)
    name = random_filename(file_storage.filename)
    file_storage.save(os.path.join(folder, name))
    return name


def remove_avatar_file(name: Optional[str]):
    if not name or name == DEFAULT_AVATAR:
        return
    path = os.path.join(current_app.config["UPLOAD_FOLDER"], os.path.basename(name))
    try:
        os.remove(path)
    except FileNotFoundError:
        # a concurrent upload already removed it
        pass


def plain(message: str, status: int = 200) -> Response:
    return Response(message, status=status, mimetype="text/plain")


# -----------------------
# Templates
# -----------------------
LAYOUT_HEAD = r"""
<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <title>Mini Social - {{ title }}</title>
  <meta name="viewport" content="width=device-width,initial-scale=1" />
  <style>
    body { font-family: Arial, sans-serif; max-width:760px; margin: 20px auto; }
    nav a { margin-right: 12px; }
    .card { border: 1px solid #ddd; padding:12px; border-radius:6px; margin-bottom:12px; box-shadow: 0 1px 3px rgba(0,0,0,0.03); }
    .small { font-size:0.9em; color:#666; }
    .avatar { width:96px; height:96px; border-radius:50%; object-fit:cover; background:#eee; display:inline-flex; align-items:center; justify-content:center; font-size:2em; color:#888; }
    button { cursor:pointer; padding:6px 10px; border-radius:6px; border:1px solid #ddd; background:#fff; }
    textarea { width:100%; min-height:60px; padding:6px; border-radius:6px; border:1px solid #ccc; }
    input[type="text"], input[type="email"], input[type="password"], input[type="number"] { width:100%; padding:6px; border-radius:6px; border:1px solid #ccc; }
  </style>
</head>
<body>
  <nav>
    {% if user %}
      <a href="/profile">Profile</a><a href="/feed">Feed</a><a href="/logout">Logout</a>
    {% else %}
      <a href="/register">Register</a><a href="/login">Login</a>
    {% endif %}
  </nav>
"""

LAYOUT_FOOT = r"""
</body>
</html>
"""

REGISTER_HTML = LAYOUT_HEAD + r"""
  <div class="card">
    <h3>Create account</h3>
    <form method="post" action="/register">
      <input type="text" name="name" placeholder="name" required /><br/>
      <input type="text" name="username" placeholder="username" required /><br/>
      <input type="number" name="age" placeholder="age" min="0" max="150" required /><br/>
      <input type="email" name="email" placeholder="email" required /><br/>
      <input type="password" name="password" placeholder="password" required /><br/>
      <button type="submit">Register</button>
    </form>
    <p class="small">Already registered? <a href="/login">Log in</a></p>
  </div>
""" + LAYOUT_FOOT

LOGIN_HTML = LAYOUT_HEAD + r"""
  <div class="card">
    <h3>Log in</h3>
    <form method="post" action="/login">
      <input type="email" name="email" placeholder="email" required /><br/>
      <input type="password" name="password" placeholder="password" required /><br/>
      <button type="submit">Login</button>
    </form>
  </div>
""" + LAYOUT_FOOT

AVATAR_HTML = r"""
{% macro avatar(u, sentinel) -%}
  {% if u and u.avatar and u.avatar != sentinel %}
    <img class="avatar" src="/uploads/{{ u.avatar }}" alt="{{ u.username }}" />
  {% else %}
    <span class="avatar">{{ (u.username if u else "?")[:1] | upper }}</span>
  {% endif %}
{%- endmacro %}
"""

PROFILE_HTML = AVATAR_HTML + LAYOUT_HEAD + r"""
  <div class="card">
    {{ avatar(user, default_avatar) }}
    <h2>{{ user.name }} <span class="small">@{{ user.username }}</span></h2>
    <form method="post" action="/upload-avatar" enctype="multipart/form-data">
      <input type="file" name="avatar" accept="image/jpeg,image/png,image/gif,image/webp" />
      <button type="submit">Upload avatar</button>
    </form>
  </div>

  <div class="card">
    <h3>Create Post</h3>
    <form method="post" action="/create-post">
      <textarea name="content" placeholder="Write something..."></textarea><br/>
      <button type="submit">Post</button>
    </form>
  </div>

  <h3>Your posts</h3>
  {% for post in posts %}
    <div class="card">
      <div class="small">{{ post.created_at.strftime("%Y-%m-%d %H:%M") }}</div>
      <div>{{ post.content }}</div>
      <form method="post" action="/like-post/{{ post['_id'] }}" style="display:inline">
        <button type="submit">{{ "Unlike" if user['_id'] in post.likes else "Like" }} ({{ post.likes | length }})</button>
      </form>
      <form method="post" action="/edit-post/{{ post['_id'] }}">
        <input type="text" name="newContent" value="{{ post.content }}" />
        <button type="submit">Save</button>
      </form>
    </div>
  {% else %}
    <p class="small">No posts yet.</p>
  {% endfor %}
""" + LAYOUT_FOOT

FEED_HTML = AVATAR_HTML + LAYOUT_HEAD + r"""
  <h2>Feed</h2>
  {% for post in posts %}
    <div class="card">
      <div>
        {{ avatar(post.owner, default_avatar) }}
        <strong>@{{ post.owner.username if post.owner else "unknown" }}</strong>
        <span class="small">{{ post.created_at.strftime("%Y-%m-%d %H:%M") }}</span>
      </div>
      <div>{{ post.content }}</div>
      <form method="post" action="/feed/like/{{ post['_id'] }}">
        <button type="submit">{{ "Unlike" if user['_id'] in post.likes else "Like" }} ({{ post.likes | length }})</button>
      </form>
      {% for comment in post.comments %}
        <div class="small"><strong>@{{ comment.author.username if comment.author else "unknown" }}</strong>: {{ comment.text }}</div>
      {% endfor %}
      <form method="post" action="/feed/comment/{{ post['_id'] }}">
        <input type="text" name="comment" placeholder="Write comment..." />
        <button type="submit">Send</button>
      </form>
    </div>
  {% else %}
    <p class="small">Nothing here yet.</p>
  {% endfor %}
""" + LAYOUT_FOOT


def render_page(source: str, title: str, **context):
    return render_template_string(source, title=title, default_avatar=DEFAULT_AVATAR, **context)


# -----------------------
# Routes
# -----------------------
@bp.route("/", methods=["GET"])
def index():
    return redirect("/register")


@bp.route("/register", methods=["GET"])
def register_form():
    return render_page(REGISTER_HTML, "Register", user=None)


@bp.route("/login", methods=["GET"])
def login_form():
    return render_page(LOGIN_HTML, "Login", user=None)


@bp.route("/register", methods=["POST"])
def register():
    form = request.form
    name = (form.get("name") or "").strip()
    username = (form.get("username") or "").strip()
    email = (form.get("email") or "").strip().lower()
    password = form.get("password") or ""
    age_raw = (form.get("age") or "").strip()

    if not name or not username or not email or not password or not age_raw:
        return plain("name, username, age, email and password required", 400)
    try:
        age = int(age_raw)
    except ValueError:
        return plain("age must be a whole number", 400)
    if age < 0 or age > MAX_AGE:
        return plain("age must be a whole number", 400)

    if user_exists(email, username):
        return plain("User already exists", 409)
    try:
        user_id = create_user(name, username, age, email, password)
    except DuplicateKeyError:
        return plain("User already exists", 409)
    logger.info("Registered user %s", user_id)

    token = create_token(get_user_by_id(user_id))
    return set_token_cookie(redirect("/login"), token)


@bp.route("/login", methods=["POST"])
def login():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""

    user = get_user_by_email(email)
    if user is None:
        logger.warning("Login failed: unknown email")
        return plain("User not found", 401)
    if not check_password_hash(user["password"], password):
        logger.warning("Login failed: wrong password for user %s", user["_id"])
        return plain("Wrong password", 401)

    logger.info("User %s logged in", user["_id"])
    return set_token_cookie(redirect("/profile"), create_token(user))


@bp.route("/profile", methods=["GET"])
@login_required
def profile():
    user = g.current_user
    posts = list_posts(user_id=user["_id"])
    return render_page(PROFILE_HTML, "Profile", user=user, posts=posts)


@bp.route("/upload-avatar", methods=["POST"])
@login_required
def upload_avatar():
    user = g.current_user
    try:
        filename = save_avatar_file(request.files.get("avatar"))
    except UploadRejected as e:
        logger.warning("Avatar upload rejected for user %s: %s", user["_id"], e.message)
        return plain(e.message, e.status)

    # not transactional: a crash between these steps can orphan a file
    set_user_avatar(user["_id"], filename)
    remove_avatar_file(user.get("avatar"))
    logger.info("User %s replaced avatar with %s", user["_id"], filename)
    return redirect("/profile")


@bp.route("/create-post", methods=["POST"])
@login_required
def create_post_route():
    post_id = create_post(g.current_user["_id"], request.form.get("content", ""))
    logger.info("User %s created post %s", g.current_user["_id"], post_id)
    return redirect("/profile")


def _toggle_like_then(post_id: str, target: str):
    result = toggle_like(parse_object_id(post_id), g.current_user["_id"])
    if result is None:
        abort(404)
    return redirect(target)


@bp.route("/like-post/<post_id>", methods=["POST"])
@login_required
def like_post(post_id):
    return _toggle_like_then(post_id, "/profile")


@bp.route("/edit-post/<post_id>", methods=["POST"])
@login_required
def edit_post(post_id):
    oid = parse_object_id(post_id)
    post = get_post(oid)
    if post is None:
        abort(404)
    if post["user"] != g.current_user["_id"]:
        logger.warning("User %s tried to edit post %s they do not own", g.current_user["_id"], oid)
        return plain("You can only edit your own posts", 403)
    if not update_post_content(oid, g.current_user["_id"], request.form.get("newContent", "")):
        abort(404)
    return redirect("/profile")


@bp.route("/feed", methods=["GET"])
@login_required
def feed():
    return render_page(FEED_HTML, "Feed", user=g.current_user, posts=list_posts())


@bp.route("/feed/comment/<post_id>", methods=["POST"])
@login_required
def comment_post(post_id):
    if not add_comment(parse_object_id(post_id), g.current_user["_id"], request.form.get("comment", "")):
        abort(404)
    return redirect("/feed")


@bp.route("/feed/like/<post_id>", methods=["POST"])
@login_required
def feed_like(post_id):
    return _toggle_like_then(post_id, "/feed")


@bp.route("/logout", methods=["GET"])
def logout():
    user = user_from_token(request.cookies.get(TOKEN_COOKIE))
    if user is not None:
        revoke_tokens(user["_id"])
        logger.info("User %s logged out", user["_id"])
    response = redirect("/login")
    response.delete_cookie(TOKEN_COOKIE)
    return response


@bp.route("/uploads/<path:filename>", methods=["GET"])
def uploaded_file(filename):
    # Serve uploaded files (use nginx or S3 at scale)
    return send_from_directory(current_app.config["UPLOAD_FOLDER"], filename, as_attachment=False)


# -----------------------
# Security headers
# -----------------------
@bp.after_app_request
def set_security_headers(response):
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer-when-downgrade")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=()")
    response.headers.setdefault("Content-Security-Policy", "default-src 'self' 'unsafe-inline'; img-src 'self' data:;")
    return response


# -----------------------
# Error handlers
# -----------------------
@bp.app_errorhandler(413)
def too_large(e):
    return plain("File too large", 413)


@bp.app_errorhandler(404)
def not_found(e):
    return plain("Not found", 404)


@bp.app_errorhandler(400)
def bad_request(e):
    return plain("Bad request", 400)


# -----------------------
# App factory
# -----------------------
def create_app(config: Optional[Config] = None, db=None) -> Flask:
    """
    Build the application. `db` is a pymongo Database; when omitted a client
    is created from config.mongodb_url.
    """
    config = config or Config.from_env()
    logging.basicConfig(level=config.log_level)

    app = Flask(__name__, static_folder=None)
    app.config["SECRET_KEY"] = config.jwt_secret
    app.config["JWT_ALGORITHM"] = config.jwt_algorithm
    app.config["JWT_EXP_SECONDS"] = config.jwt_exp_seconds
    app.config["UPLOAD_FOLDER"] = config.upload_folder
    app.config["AVATAR_MAX_BYTES"] = config.avatar_max_bytes
    app.config["MAX_CONTENT_LENGTH"] = config.avatar_max_bytes + MULTIPART_OVERHEAD
    app.config["COOKIE_SECURE"] = config.cookie_secure

    # CORS
    CORS(app, resources={r"/*": {"origins": config.cors_origins}})

    if db is None:
        db = MongoClient(config.mongodb_url)[config.mongodb_db]
    app.extensions["mongo_db"] = db
    ensure_indexes(db)
    os.makedirs(config.upload_folder, exist_ok=True)

    app.register_blueprint(bp)
    logger.info("Database ready: %s", db.name)
    logger.info("Uploads folder: %s", config.upload_folder)
    return app


# -----------------------
# Run server (for dev only). For production use a WSGI server.
# -----------------------
if __name__ == "__main__":
    create_app().run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 5000)),
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
    )

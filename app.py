import logging
import os
import secrets

from dotenv import load_dotenv
from flask import Flask, request, jsonify, session

load_dotenv()

from background_jobs import start_app_context_job
from backend.errors import AuthError, PersistenceError, ScheduleEngineError, ValidationError
from backend.schedule_engine import engine_from_config
from models import db, User
from services.google_calendar_client import GoogleCalendarClient
from services.google_oauth_client import GoogleOAuthClient
from services.sql_stores import SqlCheckpointStore, SqlItemStore, SqlTokenStore
from services.validation_service import parse_bool, parse_item_changes, parse_new_item

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///schedule.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
app.config['PERMANENT_SESSION_LIFETIME'] = 365 * 24 * 60 * 60  # 1 year in seconds
app.config['API_SHARED_KEY'] = os.environ.get('API_SHARED_KEY')  # Optional shared key for API callers
app.config['DEFAULT_TIMEZONE'] = os.environ.get('DEFAULT_TIMEZONE', 'UTC')
app.config['RECURRENCE_INTERVAL_MINUTES'] = int(os.environ.get('RECURRENCE_INTERVAL_MINUTES', 60))
app.config['RECURRENCE_HORIZON_DAYS'] = int(os.environ.get('RECURRENCE_HORIZON_DAYS', 30))
app.config['SYNC_INITIAL_LOOKBACK_DAYS'] = int(os.environ.get('SYNC_INITIAL_LOOKBACK_DAYS', 30))
app.config['TOKEN_REFRESH_MARGIN_SECONDS'] = int(os.environ.get('TOKEN_REFRESH_MARGIN_SECONDS', 300))
app.config['GOOGLE_CLIENT_ID'] = os.environ.get('GOOGLE_CLIENT_ID')
app.config['GOOGLE_CLIENT_SECRET'] = os.environ.get('GOOGLE_CLIENT_SECRET')
app.config['GOOGLE_REDIRECT_URI'] = os.environ.get('GOOGLE_REDIRECT_URI')
app.config['GOOGLE_CALENDAR_ID'] = os.environ.get('GOOGLE_CALENDAR_ID', 'primary')

db.init_app(app)


def _calendar_client(access_token):
    return GoogleCalendarClient(
        access_token,
        calendar_id=app.config['GOOGLE_CALENDAR_ID'],
        timezone=app.config['DEFAULT_TIMEZONE'],
    )


oauth_client = GoogleOAuthClient(
    app.config['GOOGLE_CLIENT_ID'],
    app.config['GOOGLE_CLIENT_SECRET'],
    redirect_uri=app.config['GOOGLE_REDIRECT_URI'],
)
engine = engine_from_config(
    app.config,
    SqlItemStore(),
    SqlTokenStore(),
    SqlCheckpointStore(),
    _calendar_client,
    oauth_client=oauth_client,
    app=app,
)


def get_current_user():
    """Resolve the current user from a shared API key + user id header, else fall back to session."""
    # Header-based auth for service callers
    api_key = request.headers.get('X-API-Key')
    api_user_id = request.headers.get('X-User-Id')
    shared_key = app.config.get('API_SHARED_KEY')
    if shared_key and api_key and api_user_id:
        try:
            api_uid_int = int(api_user_id)
        except (TypeError, ValueError):
            api_uid_int = None
        if api_uid_int and api_key == shared_key:
            user = db.session.get(User, api_uid_int)
            if user:
                return user

    # Session-based auth for browser users
    user_id = session.get('user_id')
    if user_id:
        return db.session.get(User, user_id)
    return None

with app.app_context():
    db.create_all()


@app.errorhandler(ScheduleEngineError)
def _engine_error(exc):
    if isinstance(exc, ValidationError):
        status = 400
    elif isinstance(exc, AuthError):
        status = 401
    elif isinstance(exc, PersistenceError):
        app.logger.error(f"Persistence failure: {exc}")
        status = 500
    else:
        status = 502
    return jsonify({'error': exc.message, 'kind': exc.kind}), status


def _sync_status_code(result):
    if result.success:
        return 200
    if result.error_kind == 'auth':
        return 401
    if result.error_kind == 'validation':
        return 400
    return 502


def _item_payload(record):
    data = record.to_dict()
    next_due = engine.next_due(record)
    data['next_due'] = next_due.isoformat() if next_due else None
    return data


def _start_scheduler():
    """Start the periodic recurrence expansion job."""
    if os.environ.get('ENABLE_RECURRENCE_JOBS', '1') != '1':
        return
    # Avoid double-start in Flask debug reloader
    if app.debug and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        return
    engine.trigger_expansion(app.config['RECURRENCE_INTERVAL_MINUTES'])

_jobs_bootstrapped = False

@app.before_request
def _bootstrap_background_jobs():
    global _jobs_bootstrapped
    if _jobs_bootstrapped:
        return
    _start_scheduler()
    _jobs_bootstrapped = True

# User Selection Routes
@app.route('/api/users', methods=['POST'])
def create_user():
    """Create a user and select it for this session"""
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    email = (data.get('email') or '').strip() or None

    if not username:
        return jsonify({'error': 'Username is required'}), 400

    if User.query.filter_by(username=username).first():
        return jsonify({'error': 'Username already exists'}), 400

    user = User(username=username, email=email)
    db.session.add(user)
    db.session.commit()

    session['user_id'] = user.id
    session.permanent = True

    return jsonify({'success': True, 'user_id': user.id, 'username': user.username}), 201

@app.route('/set-user/<int:user_id>', methods=['POST'])
def set_user(user_id):
    """Set the current user in session"""
    user = db.get_or_404(User, user_id)
    session['user_id'] = user.id
    session.permanent = True  # Make session persistent across browser restarts
    return jsonify({'success': True, 'username': user.username})


# Items
@app.route('/api/items', methods=['GET', 'POST'])
def items():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    if request.method == 'GET':
        records = engine.list_items(
            user.id,
            kind=request.args.get('kind') or None,
            source=request.args.get('source') or None,
        )
        return jsonify([_item_payload(r) for r in records])

    record = parse_new_item(request.get_json(silent=True), user.id, app.config['DEFAULT_TIMEZONE'])
    saved = engine.create_item(record)
    app.logger.info(f"Created item {saved.id} for user {user.id}")
    return jsonify(_item_payload(saved)), 201


@app.route('/api/items/<int:item_id>', methods=['PUT', 'DELETE'])
def item_detail(item_id):
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401

    if request.method == 'DELETE':
        if not engine.delete_item(user.id, item_id):
            return jsonify({'error': 'Item not found'}), 404
        return '', 204

    current = engine.get_item(user.id, item_id)
    if current is None:
        return jsonify({'error': 'Item not found'}), 404
    if current.is_occurrence and 'recurrence' in (request.get_json(silent=True) or {}):
        return jsonify({'error': 'Generated occurrences cannot carry their own recurrence'}), 400
    changes = parse_item_changes(request.get_json(silent=True), app.config['DEFAULT_TIMEZONE'], current=current)
    saved = engine.update_item(user.id, item_id, changes)
    if saved is None:
        return jsonify({'error': 'Item not found'}), 404
    return jsonify(_item_payload(saved))


@app.route('/api/recurrence/expand-now', methods=['POST'])
def expand_now():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    data = request.get_json(silent=True) or {}
    if parse_bool(data.get('background')):
        start_app_context_job(
            app,
            engine.run_expansion_sweep,
            kwargs={'owner_ids': [user.id]},
            on_error=lambda exc: app.logger.error(f"Manual expansion failed for user {user.id}: {exc}"),
            name=f"expand-{user.id}",
        )
        return jsonify({'status': 'started'}), 202
    report = engine.run_expansion_sweep(owner_ids=[user.id])
    return jsonify(report.to_dict())


# Google Calendar
@app.route('/api/calendar/connection')
def calendar_connection():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    info = engine.token_manager.connection_info(user.id)
    info['sync_in_progress'] = engine.sync_in_progress(user.id)
    info['oauth_configured'] = oauth_client.configured
    return jsonify(info)


@app.route('/api/calendar/google/auth-url')
def calendar_auth_url():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    if not oauth_client.configured:
        return jsonify({'error': 'Google Calendar is not configured on this server'}), 400
    state = secrets.token_urlsafe(24)
    session['google_oauth_state'] = state
    session['google_oauth_user_id'] = user.id
    return jsonify({'auth_url': oauth_client.authorization_url(state)})


@app.route('/calendar/google-callback')
def calendar_google_callback():
    expected_state = session.pop('google_oauth_state', None)
    user_id = session.pop('google_oauth_user_id', None)
    if request.args.get('error'):
        return jsonify({'error': f"Google authorization failed: {request.args.get('error')}"}), 400
    if not expected_state or request.args.get('state') != expected_state or not user_id:
        return jsonify({'error': 'Invalid or expired authorization state'}), 400

    token = engine.token_manager.connect(user_id, request.args.get('code'), app.config['GOOGLE_REDIRECT_URI'])
    app.logger.info(f"Google Calendar connected for user {user_id}")
    return jsonify({'success': True, 'email': token.email})


@app.route('/api/calendar/sync', methods=['POST'])
def calendar_sync():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    data = request.get_json(silent=True) or {}
    if parse_bool(data.get('background')):
        if engine.sync_in_progress(user.id):
            return jsonify({'status': 'in_progress'}), 202
        start_app_context_job(
            app,
            engine.request_sync,
            args=(user.id,),
            on_error=lambda exc: app.logger.error(f"Background sync failed for user {user.id}: {exc}"),
            name=f"sync-{user.id}",
        )
        return jsonify({'status': 'started'}), 202

    result = engine.request_sync(user.id)
    if not result.success:
        app.logger.warning(f"Calendar sync failed for user {user.id}: {result.error}")
    return jsonify(result.to_dict()), _sync_status_code(result)


@app.route('/api/calendar/disconnect', methods=['POST'])
def calendar_disconnect():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'No user selected'}), 401
    revoked = engine.disconnect(user.id)
    return jsonify({'success': True, 'revoked': revoked})


if __name__ == '__main__':
    app.run(debug=os.environ.get('FLASK_DEBUG') == '1', port=int(os.environ.get('PORT', 5000)))

from flask_sqlalchemy import SQLAlchemy

from backend.schedule_records import utc_now

db = SQLAlchemy()


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    # Relationships
    items = db.relationship('ScheduledItem', backref='owner', lazy=True, cascade="all, delete-orphan")
    calendar_tokens = db.relationship('CalendarToken', backref='user', lazy=True, cascade="all, delete-orphan")
    sync_checkpoints = db.relationship('SyncCheckpoint', backref='user', lazy=True, cascade="all, delete-orphan")

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ScheduledItem(db.Model):
    """
    Task or event row. Recurring definitions, generated occurrences and plain items
    share this table; occurrences point at their definition through parent_id.
    Schedule instants are naive wall-clock times in DEFAULT_TIMEZONE, edit and sync
    timestamps are naive UTC.
    """
    __table_args__ = (
        db.UniqueConstraint('parent_id', 'start_at', name='uq_occurrence_instant'),
        db.UniqueConstraint('user_id', 'external_id', name='uq_user_external_id'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    kind = db.Column(db.String(10), nullable=False, default='event')  # task | event
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), default='todo')  # todo | in_progress | done
    start_at = db.Column(db.DateTime, nullable=True)
    end_at = db.Column(db.DateTime, nullable=True)

    is_recurring = db.Column(db.Boolean, default=False)
    recurrence_pattern = db.Column(db.String(10), nullable=True)  # daily | weekly | monthly | yearly
    recurrence_days = db.Column(db.String(80), nullable=True)  # comma-separated weekday tags
    recurrence_end_date = db.Column(db.Date, nullable=True)
    recurrence_count = db.Column(db.Integer, nullable=True)
    recurrence_mode = db.Column(db.String(10), nullable=True)  # clone | refresh
    series_start = db.Column(db.DateTime, nullable=True)
    recurrence_exhausted = db.Column(db.Boolean, default=False)
    expanded_through = db.Column(db.DateTime, nullable=True)  # latest instant ever generated
    parent_id = db.Column(db.Integer, db.ForeignKey('scheduled_item.id'), nullable=True, index=True)
    occurrences = db.relationship(
        'ScheduledItem',
        backref=db.backref('parent', remote_side=[id]),
        cascade="all, delete-orphan",
        foreign_keys=[parent_id],
    )

    source = db.Column(db.String(10), nullable=False, default='local')  # local | external
    external_id = db.Column(db.String(255), nullable=True)
    external_updated_at = db.Column(db.DateTime, nullable=True)
    last_updated_at = db.Column(db.DateTime, default=utc_now)
    created_at = db.Column(db.DateTime, default=utc_now)


class CalendarToken(db.Model):
    """OAuth credential for a user's external calendar account."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    email = db.Column(db.String(200), nullable=True)
    access_token = db.Column(db.Text, nullable=False)
    refresh_token = db.Column(db.Text, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    def to_dict(self):
        return {
            'email': self.email,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class SyncCheckpoint(db.Model):
    """How far the last successful pull/push phases got for a user."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)
    pulled_through = db.Column(db.DateTime, nullable=True)
    pushed_through = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

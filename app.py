import os
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Flask,
    request,
    jsonify
)
from dotenv import load_dotenv

from checkin_monitor import CivilClock, MissedCheckinMonitor, load_session_windows
from servicenow import (
    DEFAULT_CHECKIN_TABLE,
    DEFAULT_ELDERLY_TABLE,
    RecordStoreError,
    ServiceNowGateway
)

logger = logging.getLogger(__name__)

################################################################################
# 1. ENVIRONMENT & CONFIGURATION
################################################################################
def _env_flag(name, default='false'):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config():
    """Reads runtime configuration from the environment (and a .env file, if present)."""
    load_dotenv()
    return {
        'SECRET_KEY': os.environ.get('FLASK_SECRET_KEY', 'a-super-secret-key-that-you-should-change'),
        'SN_INSTANCE': os.environ.get('SN_INSTANCE', ''),
        'SN_USERNAME': os.environ.get('SN_USERNAME', ''),
        'SN_PASSWORD': os.environ.get('SN_PASSWORD', ''),
        'SN_ELDERLY_TABLE': os.environ.get('SN_ELDERLY_TABLE', DEFAULT_ELDERLY_TABLE),
        'SN_CHECKIN_TABLE': os.environ.get('SN_CHECKIN_TABLE', DEFAULT_CHECKIN_TABLE),
        'SN_TIMEOUT_SECONDS': float(os.environ.get('SN_TIMEOUT_SECONDS', '8')),
        'TIMEZONE_NAME': os.environ.get('TIMEZONE_NAME', 'Asia/Singapore'),
        'CHECK_INTERVAL_MINUTES': int(os.environ.get('CHECK_INTERVAL_MINUTES', '15')),
        'SESSION_WINDOWS': os.environ.get('SESSION_WINDOWS') or None,
        'ESCALATION_RETRY_ON_FAILURE': _env_flag('ESCALATION_RETRY_ON_FAILURE'),
        'START_SCHEDULER': _env_flag('START_SCHEDULER', 'true'),
        'LOG_LEVEL': os.environ.get('LOG_LEVEL', 'INFO').upper(),
    }


def configure_logging(level):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _normalize_elderly(row):
    return {
        'sys_id': row.get('sys_id', ''),
        'sn': row.get('serial_number') or row.get('u_serial_number') or 'NA',
        'name': row.get('name') or row.get('u_name') or 'NA',
        'elderly_username': row.get('elderly_username') or row.get('u_elderly_username') or 'NA',
        'condition': row.get('condition_special_consideration') or row.get('u_condition_special_consideration') or 'NA',
        'caregiver': row.get('caregiver_name') or row.get('u_caregiver_name') or 'NA',
        'paused': str(row.get('u_paused', row.get('paused', False))).strip().lower() == 'true',
    }


def _normalize_checkin(row):
    return {
        'timestamp': row.get('sys_created_on', ''),
        'elderly_name': row.get('elderly_name') or row.get('name') or row.get('u_elderly') or '',
        'status': row.get('status') or row.get('u_status') or '',
    }

################################################################################
# 2. APP FACTORY (RECORD STORE, MONITOR, SCHEDULER)
################################################################################
def create_app(config=None, gateway=None, clock=None, start_scheduler=None):
    cfg = load_config()
    cfg.update(config or {})
    configure_logging(cfg['LOG_LEVEL'])

    app = Flask(__name__)
    app.config.update(cfg)

    if gateway is None:
        gateway = ServiceNowGateway(
            cfg['SN_INSTANCE'],
            cfg['SN_USERNAME'],
            cfg['SN_PASSWORD'],
            elderly_table=cfg['SN_ELDERLY_TABLE'],
            checkin_table=cfg['SN_CHECKIN_TABLE'],
            timeout=cfg['SN_TIMEOUT_SECONDS'],
        )
    clock = clock or CivilClock(cfg['TIMEZONE_NAME'])
    monitor = MissedCheckinMonitor(
        gateway,
        load_session_windows(cfg['SESSION_WINDOWS']),
        clock,
        retry_failed_escalations=cfg['ESCALATION_RETRY_ON_FAILURE'],
    )
    app.extensions['record_store'] = gateway
    app.extensions['checkin_monitor'] = monitor

    if start_scheduler is None:
        start_scheduler = cfg['START_SCHEDULER']
    if start_scheduler:
        scheduler = BackgroundScheduler(daemon=True, timezone=cfg['TIMEZONE_NAME'])
        monitor.schedule(scheduler, interval_minutes=cfg['CHECK_INTERVAL_MINUTES'])
        try:
            scheduler.start()
            logger.info("Missed check-in scheduler started (every %s minutes)", cfg['CHECK_INTERVAL_MINUTES'])
        except Exception:
            logger.exception("Error starting scheduler")
        app.extensions['scheduler'] = scheduler

    register_routes(app)
    return app

################################################################################
# 3. ROUTES
################################################################################
def register_routes(app):
    gateway = app.extensions['record_store']
    monitor = app.extensions['checkin_monitor']

    @app.route('/api/caregiver/elderly')
    def caregiver_elderly():
        try:
            rows = gateway.list_persons()
        except RecordStoreError as e:
            logger.error("ServiceNow elderly fetch error: %s", e)
            return jsonify({'success': False}), 500
        return jsonify({'success': True, 'elderly': [_normalize_elderly(r) for r in rows]})

    @app.route('/api/caregiver/checkins')
    def caregiver_checkins():
        try:
            rows = gateway.list_log_entries()
        except RecordStoreError as e:
            logger.error("ServiceNow check-in fetch error: %s", e)
            return jsonify({'success': False}), 500
        return jsonify({'success': True, 'checkins': [_normalize_checkin(r) for r in rows]})

    @app.route('/checkin', methods=['POST'])
    def checkin():
        elderly_id = request.cookies.get('elderlyId')
        if not elderly_id:
            return jsonify({'success': False}), 401
        try:
            elderly = gateway.get_elderly_by_sys_id(elderly_id)
            if not elderly:
                return jsonify({'success': False}), 401
            gateway.append_log_entry({
                'u_elderly': elderly.get('sys_id', elderly_id),
                'name': elderly.get('name', ''),
                'status': 'Checked In',
                'u_timestamp': monitor.clock.now().timestamp,
            })
        except RecordStoreError as e:
            logger.error("Check-in failed for %s: %s", elderly_id, e)
            return jsonify({'success': False}), 500
        return jsonify({'success': True})

    @app.route('/api/monitor/status')
    def monitor_status():
        last = monitor.last_summary
        return jsonify({
            'windows': [w.to_dict() for w in monitor.windows],
            'retry_failed_escalations': monitor.retry_failed_escalations,
            'tracking': monitor.tracker.snapshot(),
            'last_pass': last.to_dict() if last else None,
        })

    @app.route('/api/monitor/run', methods=['POST'])
    def monitor_run():
        summary = monitor.run_pass()
        return jsonify({'success': summary.error is None, 'summary': summary.to_dict()})

################################################################################
# 4. MAIN EXECUTION
################################################################################
if __name__ == '__main__':
    app = create_app()
    try:
        # use_reloader=False keeps the scheduler from running twice in debug mode
        app.run(debug=True, port=int(os.environ.get('PORT', '3000')), use_reloader=False)
    finally:
        scheduler = app.extensions.get('scheduler')
        if scheduler and scheduler.running:
            scheduler.shutdown()
            logger.info("Scheduler shut down.")

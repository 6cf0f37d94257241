"""Flask web application for the rebalancer."""

import hmac
import logging
import os

from flask import Flask, jsonify, request, send_file

from config import MAX_POSITIONS, RISK, SIGNALS
from errors import ConcurrentRunConflict, PersistenceFailure
from market_data import fetch_history, get_data_source_status, is_using_sample_data
from performance import performance_summary
from rebalancer import configure_logging, refresh_prices, run_rebalance
from settings import default_store as default_settings
from signals import analyze
from store import ReportStore
from strategy_config import ADMIN_PASSWORD_ENV

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config['REPORT_STORE'] = None


def get_store() -> ReportStore:
    """Shared report store instance."""
    if app.config['REPORT_STORE'] is None:
        app.config['REPORT_STORE'] = ReportStore()
    return app.config['REPORT_STORE']


def _report_json(snapshot):
    record = snapshot.to_record()
    data = record.pop("data")
    record["id"] = str(record["id"])
    return {**record, **data}


@app.route('/api/reports')
def api_reports():
    """All reports, most recent first."""
    reports = get_store().all()
    logger.info("[API] Returning %d valid reports", len(reports))
    return jsonify([_report_json(r) for r in reports])


@app.route('/api/reports/latest')
def api_latest_report():
    """The current portfolio."""
    latest = get_store().latest()
    if latest is None:
        return jsonify({'error': 'No reports yet'}), 404
    return jsonify(_report_json(latest))


@app.route('/api/performance')
def api_performance():
    """Win rate / ROI statistics."""
    return jsonify(performance_summary(get_store().all()))


@app.route('/api/quote/<code>')
def api_quote(code):
    """Technical snapshot for a code."""
    signal = analyze(fetch_history(code), code)
    if not signal.has_opinion:
        return jsonify({'error': f'Could not analyze {code}: {signal.reason}'}), 404
    return jsonify(signal.to_dict())


def _run():
    try:
        result = run_rebalance(get_store())
    except ConcurrentRunConflict as e:
        return jsonify({'error': str(e)}), 409

    if result.success:
        return jsonify({'message': 'Daily analysis completed', 'reportId': str(result.report_id)})
    return jsonify({'error': result.error, 'details': result.details}), 500


@app.route('/api/run', methods=['POST'])
def api_run():
    """Run a rebalance now."""
    return _run()


@app.route('/api/cron/trigger')
def api_cron_trigger():
    """Entry point for an external scheduler."""
    logger.info("[Cron] Trigger received")
    return _run()


@app.route('/api/reports/refresh-prices', methods=['POST'])
def api_refresh_prices():
    """Refresh prices of the current holdings."""
    try:
        snapshot = refresh_prices(get_store())
    except ConcurrentRunConflict as e:
        return jsonify({'error': str(e)}), 409
    except PersistenceFailure:
        logger.exception("Price refresh failed")
        return jsonify({'error': 'Update Failed'}), 500

    if snapshot is None:
        return jsonify({'error': 'No reports yet'}), 404
    return jsonify(_report_json(snapshot))


@app.route('/api/reports/<int:report_id>/entry-price', methods=['POST'])
def api_entry_price(report_id):
    """Manually correct an entry price."""
    data = request.get_json(silent=True) or {}
    code = data.get('code')
    if not code or data.get('price') is None:
        return jsonify({'error': 'Missing code or price'}), 400

    try:
        price = float(data['price'])
        updated = get_store().set_entry_price(code, price, report_id)
    except (TypeError, ValueError):
        return jsonify({'error': 'Invalid price'}), 400
    except PersistenceFailure:
        logger.exception("Entry price update failed")
        return jsonify({'error': 'Update Failed'}), 500

    if not updated:
        return jsonify({'error': 'Stock code not found'}), 404
    return jsonify({'success': True})


@app.route('/api/admin/clear-history', methods=['DELETE'])
def api_clear_history():
    """Delete every report (password protected)."""
    expected = os.environ.get(ADMIN_PASSWORD_ENV, '')
    password = (request.get_json(silent=True) or {}).get('password', '')
    if not expected or not hmac.compare_digest(str(password), expected):
        return jsonify({'error': 'Wrong password'}), 401

    try:
        get_store().clear()
    except PersistenceFailure:
        logger.exception("Clear history failed")
        return jsonify({'error': 'Clear failed'}), 500
    return jsonify({'success': True})


@app.route('/api/settings')
def api_settings():
    """Effective AI settings per pipeline step."""
    return jsonify([s.to_dict() for s in default_settings().all()])


@app.route('/api/settings', methods=['POST'])
def api_save_setting():
    """Override provider, model, temperature or prompt of one step."""
    data = request.get_json(silent=True) or {}
    step_key = data.get('step_key')
    provider = data.get('provider')
    model_name = data.get('model_name')
    if not step_key or not provider or not model_name:
        return jsonify({'error': 'Missing required fields'}), 400

    try:
        setting = default_settings().save(
            step_key,
            provider,
            model_name,
            temperature=data.get('temperature'),
            prompt_template=data.get('prompt_template'),
        )
    except (TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400
    except PersistenceFailure:
        logger.exception("Saving setting %s failed", step_key)
        return jsonify({'error': 'Failed to save setting'}), 500
    return jsonify({'success': True, 'setting': setting.to_dict()})


@app.route('/api/backup')
def api_backup():
    """Download the report history file."""
    path = os.path.abspath(get_store().path)
    if not os.path.exists(path):
        return jsonify({'error': 'File not found'}), 404
    return send_file(path, mimetype='application/json', as_attachment=True,
                     download_name=os.path.basename(path))


@app.route('/api/config')
def api_config():
    """Get configuration info."""
    return jsonify({
        'max_positions': MAX_POSITIONS,
        'stop_loss_pct': RISK['stop_loss_pct'],
        'rsi_bullish': SIGNALS['rsi_bullish'],
        'rsi_bearish': SIGNALS['rsi_bearish'],
        'data_source': get_data_source_status(),
        'using_sample_data': is_using_sample_data(),
    })


if __name__ == '__main__':
    configure_logging()
    port = int(os.environ.get('PORT', 8080))
    debug = os.environ.get('FLASK_DEBUG', '0') == '1'
    app.run(host='0.0.0.0', port=port, debug=debug)

import os

from prometheus_client import Counter, Gauge, start_http_server


def init_metrics(logger):
    """Initialize Prometheus metrics if METRICS_PORT is set.

    Returns a dict with keys: enabled, refreshes, checks, check_failures,
    updates_available, state_restored. Disabled metrics are None.
    """
    result = {
        'enabled': False,
        'refreshes': None,
        'checks': None,
        'check_failures': None,
        'updates_available': None,
        'state_restored': None,
    }
    port = os.getenv('METRICS_PORT')
    if not port:
        return result
    try:
        start_http_server(int(port), addr=os.getenv('METRICS_ADDR', '0.0.0.0'))
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to start metrics: {e}")
        return result
    result['refreshes'] = Counter('dockobserver_refreshes_total', 'Inventory rebuilds completed')
    result['checks'] = Counter('dockobserver_update_checks_total', 'Registry update checks performed')
    result['check_failures'] = Counter('dockobserver_update_check_failures_total',
                                       'Update checks that could not determine a result')
    result['updates_available'] = Gauge('dockobserver_updates_available', 'Records with a newer remote image')
    result['state_restored'] = Counter('dockobserver_state_restored_total', 'State restored from backup')
    result['enabled'] = True
    logger.info(f"Prometheus metrics server on {os.getenv('METRICS_ADDR', '0.0.0.0')}:{port}")
    return result

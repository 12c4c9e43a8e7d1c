from chronoqueue.core.brokers.postgres import PostgresBroker

__all__ = [
    'PostgresBroker',
]

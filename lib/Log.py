"""
Logging Module

This module builds the application logger shared by the daemon
components. Components log dictionaries, e.g. {'status': 'start'},
so every record stays a one line, grep friendly key/value dump.

Responsibilities:
- Configure console and file output
- Forward records into a database table
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import os
import sys
import logging
from datetime import datetime, timezone
from sqlalchemy import Table, Column, MetaData, Integer, String, Text, DateTime, create_engine, insert
from sqlalchemy.pool import NullPool

## record layout shared by every handler
FORMAT = '%(asctime)s %(levelname)s [%(process)d] %(module)s.%(funcName)s %(message)s'

class DatabaseLogHandler(logging.Handler):
    """
    Logging handler writing records into a database table.

    The engine does not pool connections, so the handler keeps
    working in forked executor processes.
    """

    def __init__(self, url: str, table: str) -> None:
        super().__init__()
        self.engine = create_engine(url, poolclass = NullPool)

        metadata = MetaData()
        self.table = Table(
            table,
            metadata,
            Column('id', Integer, primary_key = True, autoincrement = True),
            Column('created', DateTime),
            Column('level', String(16)),
            Column('pid', Integer),
            Column('name', String(128)),
            Column('func', String(128)),
            Column('message', Text),
        )
        metadata.create_all(self.engine)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(self.table).values(
                    created = datetime.fromtimestamp(record.created, timezone.utc).replace(tzinfo = None),
                    level = record.levelname,
                    pid = record.process,
                    name = record.name,
                    func = record.funcName,
                    message = record.getMessage(),
                ))

        except Exception:
            ## reported on stderr by logging, the record is dropped
            self.handleError(record)

    def close(self) -> None:
        self.engine.dispose()
        super().close()

class Log(object):
    """
    Application logger factory.

    Attributes:
        logger (logging.Logger): Configured logger
    """

    def __init__(self, config: dict, verbose: int = 0) -> None:
        """
        Build the application logger.

        Args:
            config (dict): Merged configuration, uses config['name'] and
                the log section
            verbose (int): Console verbosity, 0 logs errors only

        Returns:
            None
        """

        self.config = config
        self.logger = logging.getLogger(config.get('name', 'taskdaemon'))
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        ## drop handlers of a previous initialization
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter(FORMAT)
        level = getattr(logging, str(config['log'].get('level', 'INFO')).upper(), logging.INFO)

        ## console output, verbose raises the level shown
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.ERROR if verbose <= 0 else (logging.INFO if verbose == 1 else logging.DEBUG))
        console.setFormatter(formatter)
        self.logger.addHandler(console)

        ## file output
        log_file = config['log'].get('file')
        if log_file:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok = True)
            handler = logging.FileHandler(log_file, encoding = 'utf-8')
            handler.setLevel(level)
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def add_db_handler(self, url: str, table: str) -> DatabaseLogHandler:
        """
        Forward log records into a database table.

        Args:
            url (str): SQLAlchemy database URL
            table (str): Log table name

        Returns:
            DatabaseLogHandler: Attached handler
        """

        handler = DatabaseLogHandler(url, table)
        handler.setLevel(getattr(logging, str(self.config['log'].get('level', 'INFO')).upper(), logging.INFO))
        self.logger.addHandler(handler)
        self.logger.debug({'log_table': table})
        return handler

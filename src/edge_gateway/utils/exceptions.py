# src/edge_gateway/utils/exceptions.py

class EdgeGatewayError(Exception):
    """Base exception class for the edge gateway"""
    pass

class ConfigurationError(EdgeGatewayError):
    """Raised when there are issues with configuration"""
    pass

class InitializationError(EdgeGatewayError):
    """Raised when component initialization fails"""
    pass

class CommunicationError(EdgeGatewayError):
    """Raised when communication with external services fails"""
    pass

class TransportError(CommunicationError):
    """Raised when a serial port cannot be opened or a bus transaction fails"""
    pass

class DecodeError(CommunicationError):
    """Raised when register data is malformed or too short to decode"""
    pass

class DatabaseError(EdgeGatewayError):
    """Base exception for database errors"""
    pass

class ConnectionPoolError(DatabaseError):
    """Exception for connection pool related errors"""
    pass

from dictum.protocols.memory import PersistenceGateway, ScoringPort

__all__ = [
    "PersistenceGateway",
    "ScoringPort",
]

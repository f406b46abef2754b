# invomaker/services/errors.py


class LedgerError(Exception):
    status_code = 500
    error = "Erreur interne"


class InvalidInput(LedgerError):
    status_code = 400
    error = "Donnees invalides"


class NotFound(LedgerError):
    status_code = 404
    error = "Ressource non trouvee"


class InconsistentState(LedgerError):
    """Un recalcul est deja en cours pour la meme facture."""
    status_code = 409
    error = "Recalcul deja en cours"


class InvalidStatusTransition(LedgerError):
    status_code = 409
    error = "Transition de statut interdite"

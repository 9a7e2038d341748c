# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "ApprovalEngine":
        from invoicely.services.approval_engine import ApprovalEngine
        return ApprovalEngine
    elif name == "get_approval_engine":
        from invoicely.services.approval_engine import get_approval_engine
        return get_approval_engine
    elif name == "ApprovalNotifier":
        from invoicely.services.notifications import ApprovalNotifier
        return ApprovalNotifier
    elif name == "EmailDispatcher":
        from invoicely.services.notifications import EmailDispatcher
        return EmailDispatcher
    raise AttributeError(f"module 'invoicely.services' has no attribute '{name}'")

__all__ = [
    "ApprovalEngine",
    "get_approval_engine",
    "ApprovalNotifier",
    "EmailDispatcher",
]

from invoicely.api.approvals import router as approvals_router

__all__ = ["approvals_router"]

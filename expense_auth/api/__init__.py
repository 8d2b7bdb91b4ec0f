"""HTTP routers for expense-auth."""

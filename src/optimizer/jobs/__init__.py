"""Job lifecycle: builder, store, service facade and HTTP routes."""

"""Field-service ticket coordination: tickets, appointments, technicians and notifications."""

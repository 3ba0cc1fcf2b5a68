"""Event publishing, subscribing and Redis-backed buffering."""
"""MongoDB documents and models for chat logs and conversations."""
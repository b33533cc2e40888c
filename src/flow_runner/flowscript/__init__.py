"""FlowScript graph model, validation, references and edge conditions."""

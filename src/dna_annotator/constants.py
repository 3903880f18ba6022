APP_NAME = "DNA Annotator"
APP_SLUG = "dna_annotator"
CONFIG_FILENAME = "config.json"
LOG_FILENAME = "dna_annotator.log"
CLINVAR_DIR_ENV = "DNA_ANNOTATOR_CLINVAR_DIR"
SOURCE_NAME = "dna_annotator"

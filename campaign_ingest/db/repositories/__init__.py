from campaign_ingest.db.repositories.campaigns import CampaignsRepository
